from __future__ import annotations

import asyncio

from mediaforge.config import Settings, get_settings
from mediaforge.services.settlement import SettlementEngine, SweepResult
from mediaforge.utils.logging import get_logger


logger = get_logger('poller')


class SweepRunner:
    """Periodic server-side reconciliation.

    Client polling is the fast path; this loop catches whatever nobody polls
    for, including records abandoned by a crashed ``start``.
    """

    def __init__(self, engine: SettlementEngine, settings: Settings | None = None) -> None:
        self.engine = engine
        self.settings = settings or get_settings()
        self._lock = asyncio.Lock()

    async def run_once(self) -> SweepResult:
        # Overlapping passes would only race each other on the same rows.
        async with self._lock:
            return await self.engine.sweep(self.settings.sweep_batch_size)

    async def watch(self, interval: int | None = None) -> None:
        interval = interval or self.settings.sweep_interval_seconds
        logger.info('sweep_loop_started', interval=interval)
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.warning('sweep_failed', error=str(exc))
            await asyncio.sleep(interval)
