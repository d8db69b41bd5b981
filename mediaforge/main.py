from __future__ import annotations

import asyncio

from mediaforge.config import get_settings
from mediaforge.db.session import create_sessionmaker
from mediaforge.providers.registry import build_adapters, close_adapters
from mediaforge.services.archiver import ResultArchiver
from mediaforge.services.poller import SweepRunner
from mediaforge.services.settlement import SettlementEngine
from mediaforge.utils.logging import configure_logging, get_logger


logger = get_logger('main')


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    sessionmaker = create_sessionmaker()
    adapters = build_adapters(settings)
    archiver = ResultArchiver(sessionmaker, settings)
    engine = SettlementEngine(sessionmaker, adapters, archiver, settings)
    runner = SweepRunner(engine, settings)
    logger.info('worker_started', providers=sorted(adapters))

    try:
        await runner.watch()
    finally:
        await close_adapters(adapters)
        await archiver.close()


def run() -> None:
    asyncio.run(main())


if __name__ == '__main__':
    run()
