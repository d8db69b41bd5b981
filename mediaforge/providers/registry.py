from __future__ import annotations

from typing import Dict

from mediaforge.config import Settings, get_settings
from mediaforge.providers.base import ProviderAdapter
from mediaforge.providers.kie import KieAdapter
from mediaforge.providers.wavespeed import WavespeedAdapter


def build_adapters(settings: Settings | None = None) -> Dict[str, ProviderAdapter]:
    settings = settings or get_settings()
    timeout = settings.provider_timeout_seconds
    return {
        WavespeedAdapter.name: WavespeedAdapter(
            settings.wavespeed_api_key,
            settings.wavespeed_base_url,
            timeout=timeout,
        ),
        KieAdapter.name: KieAdapter(
            settings.kie_api_key,
            settings.kie_base_url,
            callback_url=settings.kie_callback_url,
            timeout=timeout,
        ),
    }


async def close_adapters(adapters: Dict[str, ProviderAdapter]) -> None:
    for adapter in adapters.values():
        await adapter.close()
