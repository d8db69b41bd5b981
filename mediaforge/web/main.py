from __future__ import annotations

import uvicorn

from mediaforge.config import get_settings
from mediaforge.utils.logging import configure_logging, get_logger
from mediaforge.web.app import create_app


logger = get_logger("api")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    if not settings.api_enabled:
        logger.warning("api_disabled", hint="set API_ENABLED=true to serve the internal API")
        return
    if not settings.api_token_list():
        logger.warning("api_tokens_missing", hint="every /api request will be rejected until API_TOKENS is set")
    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
