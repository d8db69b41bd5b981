from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mediaforge.db.models import Generation
from mediaforge.errors import ReconciliationConflict
from mediaforge.kinds import GenerationKind, GenerationStatus
from mediaforge.utils.time import utcnow


NON_TERMINAL = (GenerationStatus.PENDING.value, GenerationStatus.PROCESSING.value)


@dataclass
class GenerationPage:
    items: List[Generation]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.limit + len(self.items) < self.total


class GenerationStore:
    """Persistence for generation records.

    ``update_status`` is the only way a status changes: the UPDATE is
    conditioned on the status the caller last observed, so two writers racing
    on one record produce exactly one transition.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        user_id: int,
        kind: GenerationKind,
        prompt: str,
        provider: str,
        model: str,
        cost_credits: int,
        duration_seconds: int | None = None,
        context_ref: str | None = None,
        meta: Dict[str, Any] | None = None,
    ) -> Generation:
        now = utcnow()
        generation = Generation(
            user_id=user_id,
            context_ref=context_ref,
            kind=GenerationKind(kind).value,
            status=GenerationStatus.PENDING.value,
            prompt=prompt or '',
            provider=provider,
            model=model,
            external_handle=None,
            result_url=None,
            result_urls=[],
            error_message=None,
            cost_credits=cost_credits,
            duration_seconds=duration_seconds,
            meta=meta or {},
            created_at=now,
            updated_at=now,
        )
        self.session.add(generation)
        await self.session.flush()
        return generation

    async def get_by_id(self, generation_id: int, user_id: int | None = None) -> Optional[Generation]:
        stmt = select(Generation).where(Generation.id == generation_id)
        if user_id is not None:
            stmt = stmt.where(Generation.user_id == user_id)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_non_terminal_for_user(self, user_id: int) -> List[Generation]:
        result = await self.session.execute(
            select(Generation)
            .where(Generation.user_id == user_id, Generation.status.in_(NON_TERMINAL))
            .order_by(Generation.created_at, Generation.id)
        )
        return list(result.scalars().all())

    async def find_processing(self, user_id: int | None = None, limit: int | None = None) -> List[Generation]:
        stmt = select(Generation).where(Generation.status == GenerationStatus.PROCESSING.value)
        if user_id is not None:
            stmt = stmt.where(Generation.user_id == user_id)
        stmt = stmt.order_by(Generation.updated_at, Generation.id)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_stale_pending(self, cutoff: datetime) -> List[Generation]:
        result = await self.session.execute(
            select(Generation)
            .where(
                Generation.status == GenerationStatus.PENDING.value,
                Generation.external_handle.is_(None),
                Generation.created_at <= cutoff,
            )
            .order_by(Generation.id)
        )
        return list(result.scalars().all())

    async def find_recently_completed(self, user_id: int, since: datetime) -> List[Generation]:
        result = await self.session.execute(
            select(Generation)
            .where(
                Generation.user_id == user_id,
                Generation.status == GenerationStatus.COMPLETED.value,
                Generation.updated_at >= since,
            )
            .order_by(Generation.id)
        )
        return list(result.scalars().all())

    async def history(self, user_id: int, page: int = 1, limit: int = 20) -> GenerationPage:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        total = await self.session.execute(
            select(func.count(Generation.id)).where(Generation.user_id == user_id)
        )
        rows = await self.session.execute(
            select(Generation)
            .where(Generation.user_id == user_id)
            .order_by(Generation.created_at.desc(), Generation.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return GenerationPage(list(rows.scalars().all()), int(total.scalar_one() or 0), page, limit)

    async def update_status(
        self,
        generation_id: int,
        expected: GenerationStatus,
        new: GenerationStatus,
        **patch: Any,
    ) -> bool:
        now = utcnow()
        values: Dict[str, Any] = {'status': GenerationStatus(new).value, 'updated_at': now}
        if new in (GenerationStatus.COMPLETED, GenerationStatus.FAILED):
            values['finished_at'] = now
        values.update(patch)
        stmt = (
            update(Generation)
            .where(
                Generation.id == generation_id,
                Generation.status == GenerationStatus(expected).value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        generation_id: int,
        expected: GenerationStatus,
        new: GenerationStatus,
        **patch: Any,
    ) -> None:
        if not await self.update_status(generation_id, expected, new, **patch):
            raise ReconciliationConflict(generation_id, GenerationStatus(expected).value)
