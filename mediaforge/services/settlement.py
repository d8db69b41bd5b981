from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaforge.catalog.registry import resolve
from mediaforge.config import Settings, get_settings
from mediaforge.db.models import Generation
from mediaforge.errors import (
    ArchivalFailure,
    InsufficientCredits,
    NotFound,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    ReconciliationConflict,
)
from mediaforge.kinds import GenerationKind, GenerationStatus, TERMINAL_STATUSES
from mediaforge.providers.base import ProviderAdapter, ProviderResult, ProviderStatus, SubmitRequest
from mediaforge.services.archiver import ResultArchiver
from mediaforge.services.costs import calculate_cost
from mediaforge.services.generations import GenerationPage, GenerationStore
from mediaforge.services.ledger import LedgerPage, LedgerService
from mediaforge.utils.logging import get_logger
from mediaforge.utils.time import as_utc, utcnow


logger = get_logger('settlement')

TIMEOUT_MESSAGE = 'Generation timed out'
CANCELLED_MESSAGE = 'Cancelled by user'
NOT_SUBMITTED_MESSAGE = 'Generation was never submitted'
NO_OUTPUT_MESSAGE = 'Provider returned no outputs'


def refund_key(generation_id: int) -> str:
    return f'refund:generation:{generation_id}'


@dataclass
class ReconcileOutcome:
    generation: Generation
    changed: bool


@dataclass
class ClearQueueResult:
    cancelled: int = 0
    completed: int = 0
    failed: int = 0
    cleared_completed: int = 0
    refunded_credits: int = 0
    generation_ids: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.cancelled + self.completed + self.failed + self.cleared_completed


@dataclass
class SweepResult:
    expired: int = 0
    checked: int = 0
    changed: int = 0
    errors: int = 0


class SettlementEngine:
    """Drives generation records from debit to a terminal state.

    Money moves only inside the same transaction as the status change that
    justifies it: the debit commits with the PENDING record, a refund commits
    with the FAILED transition. Provider calls always happen outside any open
    transaction, and every status write is a compare-and-swap on the status
    the engine last read, so concurrent reconcilers settle a record once.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        adapters: Dict[str, ProviderAdapter],
        archiver: ResultArchiver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.adapters = adapters
        self.archiver = archiver
        self.settings = settings or get_settings()

    def _adapter(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ProviderRejected(f'Provider {provider} is not configured', provider=provider)
        return adapter

    # Start

    async def start(
        self,
        user_id: int,
        kind: GenerationKind | str,
        inputs: Dict[str, Any] | None = None,
        duration_hint: float | None = None,
        context_ref: str | None = None,
    ) -> Generation:
        kind = GenerationKind.parse(kind)
        inputs = dict(inputs or {})
        spec = resolve(kind, inputs.get('model'))
        adapter = self._adapter(spec.provider)

        duration = spec.clamp_duration(duration_hint)
        request = spec.build_request(kind, inputs, duration)
        cost = calculate_cost(kind, duration)

        meta: Dict[str, Any] = {
            'model_key': spec.key,
            'image_urls': request.image_urls,
            'audio_url': request.audio_url,
            'options': request.options,
        }
        if duration_hint is not None and duration != duration_hint:
            meta['requested_duration'] = duration_hint

        async with self.sessionmaker() as session:
            store = GenerationStore(session)
            ledger = LedgerService(session)
            # Raises NotFound before anything is written.
            await ledger.get_balance(user_id)
            generation = await store.create(
                user_id=user_id,
                kind=kind,
                prompt=request.prompt,
                provider=spec.provider,
                model=spec.model_id,
                cost_credits=cost,
                duration_seconds=math.ceil(duration) if duration else None,
                context_ref=context_ref,
                meta=meta,
            )
            try:
                await ledger.deduct(
                    user_id,
                    cost,
                    f'{kind.value} generation',
                    generation_kind=kind.value,
                    meta={'model': spec.key},
                    generation_id=generation.id,
                )
            except InsufficientCredits:
                await session.rollback()
                raise
            await session.commit()
            generation_id = generation.id

        logger.info(
            'generation_created',
            generation_id=generation_id,
            user_id=user_id,
            kind=kind.value,
            model=spec.key,
            cost=cost,
        )

        try:
            handle = await self._submit_with_retry(adapter, kind, request, generation_id)
        except ProviderError as exc:
            logger.warning('generation_submit_failed', generation_id=generation_id, error=exc.message)
            await self._fail_quietly(generation_id, GenerationStatus.PENDING, exc.message)
            return await self.get_generation(generation_id)
        except Exception as exc:
            logger.error('generation_submit_crashed', generation_id=generation_id, error=str(exc))
            await self._fail_quietly(generation_id, GenerationStatus.PENDING, f'Submission error: {exc}')
            raise

        async with self.sessionmaker() as session:
            store = GenerationStore(session)
            moved = await store.update_status(
                generation_id,
                GenerationStatus.PENDING,
                GenerationStatus.PROCESSING,
                external_handle=handle,
            )
            await session.commit()
        if moved:
            logger.info('generation_submitted', generation_id=generation_id, provider=spec.provider, handle=handle)
        else:
            # Expired or cancelled while the provider call was in flight; already refunded.
            logger.warning('generation_submitted_after_settle', generation_id=generation_id, handle=handle)
        return await self.get_generation(generation_id)

    async def _submit_with_retry(
        self,
        adapter: ProviderAdapter,
        kind: GenerationKind,
        request: SubmitRequest,
        generation_id: int,
    ) -> str:
        attempts = max(1, self.settings.submit_max_attempts)
        attempt = 1
        while True:
            try:
                return await adapter.submit(kind, request)
            except ProviderUnavailable as exc:
                logger.warning(
                    'generation_submit_retry',
                    generation_id=generation_id,
                    attempt=attempt,
                    error=exc.message,
                )
                if attempt >= attempts:
                    raise
            attempt += 1
            await asyncio.sleep(self.settings.submit_retry_delay_seconds)

    # Settlement primitives

    async def _settle_failure(
        self,
        generation_id: int,
        expected: GenerationStatus,
        message: str,
        refund: bool = True,
        flags: Dict[str, Any] | None = None,
    ) -> int:
        """CAS ``expected -> FAILED`` and refund in one transaction.

        Returns the refunded amount. Raises ``ReconciliationConflict`` when
        another writer moved the record first.
        """
        async with self.sessionmaker() as session:
            store = GenerationStore(session)
            generation = await store.get_by_id(generation_id)
            if generation is None:
                raise NotFound(f'Generation {generation_id} not found')
            patch: Dict[str, Any] = {'error_message': message}
            if flags:
                patch['meta'] = {**(generation.meta or {}), **flags}
            await store.transition(generation_id, expected, GenerationStatus.FAILED, **patch)
            refunded = 0
            if refund and generation.cost_credits > 0:
                result = await LedgerService(session).refund(
                    generation.user_id,
                    generation.cost_credits,
                    f'Refund for failed {generation.kind} generation',
                    generation_kind=generation.kind,
                    meta={'reason': message[:200]},
                    generation_id=generation_id,
                    idempotency_key=refund_key(generation_id),
                )
                refunded = generation.cost_credits if result.applied else 0
            await session.commit()

        logger.info('generation_failed', generation_id=generation_id, previous=expected.value, error=message)
        if refunded:
            logger.info('refund_issued', generation_id=generation_id, amount=refunded)
        return refunded

    async def _fail_quietly(self, generation_id: int, expected: GenerationStatus, message: str) -> bool:
        try:
            await self._settle_failure(generation_id, expected, message)
        except ReconciliationConflict:
            logger.info('settle_conflict', generation_id=generation_id, expected=expected.value)
            return False
        return True

    async def _complete(self, generation: Generation, outputs: List[str]) -> None:
        async with self.sessionmaker() as session:
            await GenerationStore(session).transition(
                generation.id,
                GenerationStatus.PROCESSING,
                GenerationStatus.COMPLETED,
                result_url=outputs[0],
                result_urls=outputs,
                error_message=None,
            )
            await session.commit()
        logger.info('generation_completed', generation_id=generation.id, outputs=len(outputs))
        await self._archive_outputs(generation, outputs)

    async def _archive_outputs(self, generation: Generation, outputs: List[str]) -> None:
        if self.archiver is None:
            return
        for url in outputs:
            try:
                await self.archiver.archive(
                    generation.user_id,
                    generation.id,
                    url,
                    generation.kind,
                    generation.prompt,
                    duration_seconds=generation.duration_seconds,
                )
            except ArchivalFailure as exc:
                logger.warning('archive_failed', generation_id=generation.id, url=url, error=exc.message)

    def _timed_out(self, generation: Generation) -> bool:
        started = as_utc(generation.updated_at or generation.created_at)
        return utcnow() - started >= timedelta(seconds=self.settings.processing_timeout_seconds)

    async def _apply_result(self, generation: Generation, result: ProviderResult) -> None:
        if result.status == ProviderStatus.SUCCEEDED and result.outputs:
            await self._complete(generation, result.outputs)
            return
        if result.status == ProviderStatus.SUCCEEDED:
            message = NO_OUTPUT_MESSAGE
        else:
            message = result.error or 'Generation failed'
        await self._settle_failure(generation.id, GenerationStatus.PROCESSING, message)

    # Reconcile

    async def reconcile(self, generation_id: int) -> ReconcileOutcome:
        generation = await self.get_generation(generation_id)
        if generation.status != GenerationStatus.PROCESSING.value:
            return ReconcileOutcome(generation, False)

        result: Optional[ProviderResult] = None
        try:
            adapter = self._adapter(generation.provider)
            if generation.external_handle:
                result = await adapter.check_status(generation.external_handle, generation.model)
        except ProviderError as exc:
            logger.warning('reconcile_check_failed', generation_id=generation_id, error=exc.message)

        try:
            if result is None or result.status == ProviderStatus.PENDING:
                if not self._timed_out(generation):
                    return ReconcileOutcome(generation, False)
                await self._settle_failure(generation_id, GenerationStatus.PROCESSING, TIMEOUT_MESSAGE)
            else:
                await self._apply_result(generation, result)
        except ReconciliationConflict:
            logger.info('reconcile_conflict', generation_id=generation_id)
            return ReconcileOutcome(await self.get_generation(generation_id), False)
        return ReconcileOutcome(await self.get_generation(generation_id), True)

    async def reconcile_all_for_user(self, user_id: int) -> List[ReconcileOutcome]:
        async with self.sessionmaker() as session:
            processing = await GenerationStore(session).find_processing(user_id=user_id)
        outcomes = []
        for generation in processing:
            try:
                outcomes.append(await self.reconcile(generation.id))
            except Exception as exc:
                logger.warning('reconcile_failed', generation_id=generation.id, user_id=user_id, error=str(exc))
        return outcomes

    async def sweep(self, limit: int | None = None) -> SweepResult:
        limit = limit or self.settings.sweep_batch_size
        cutoff = utcnow() - timedelta(seconds=self.settings.pending_stale_seconds)
        async with self.sessionmaker() as session:
            store = GenerationStore(session)
            stale = await store.find_stale_pending(cutoff)
            processing = await store.find_processing(limit=limit)

        summary = SweepResult()
        for generation in stale:
            if await self._fail_quietly(generation.id, GenerationStatus.PENDING, NOT_SUBMITTED_MESSAGE):
                summary.expired += 1

        sem = asyncio.Semaphore(max(1, self.settings.global_max_poll_concurrency))

        async def run(generation_id: int) -> ReconcileOutcome:
            async with sem:
                return await self.reconcile(generation_id)

        results = await asyncio.gather(*(run(g.id) for g in processing), return_exceptions=True)
        for generation, outcome in zip(processing, results):
            summary.checked += 1
            if isinstance(outcome, BaseException):
                summary.errors += 1
                logger.warning('sweep_reconcile_failed', generation_id=generation.id, error=str(outcome))
            elif outcome.changed:
                summary.changed += 1
        if summary.expired or summary.changed or summary.errors:
            logger.info(
                'sweep_finished',
                expired=summary.expired,
                checked=summary.checked,
                changed=summary.changed,
                errors=summary.errors,
            )
        return summary

    async def wait_for_completion(
        self,
        generation_id: int,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> Generation:
        max_attempts = max_attempts or self.settings.poll_max_attempts
        interval = self.settings.poll_interval_seconds if interval is None else interval

        for attempt in range(max_attempts):
            outcome = await self.reconcile(generation_id)
            if GenerationStatus(outcome.generation.status) in TERMINAL_STATUSES:
                return outcome.generation
            if attempt < max_attempts - 1:
                await asyncio.sleep(interval)

        logger.warning('generation_wait_exhausted', generation_id=generation_id, attempts=max_attempts)
        await self._fail_quietly(generation_id, GenerationStatus.PROCESSING, TIMEOUT_MESSAGE)
        return await self.get_generation(generation_id)

    # Cancellation

    async def clear_queue(self, user_id: int) -> ClearQueueResult:
        since = utcnow() - timedelta(seconds=self.settings.clear_queue_completed_window_seconds)
        async with self.sessionmaker() as session:
            store = GenerationStore(session)
            unfinished = await store.find_non_terminal_for_user(user_id)
            delivered = await store.find_recently_completed(user_id, since)
        in_flight = sorted(unfinished + delivered, key=lambda g: g.id)

        summary = ClearQueueResult()
        for generation in in_flight:
            try:
                await self._clear_one(generation, summary)
            except ReconciliationConflict:
                logger.info('clear_queue_conflict', generation_id=generation.id)
                continue
            summary.generation_ids.append(generation.id)

        logger.info(
            'queue_cleared',
            user_id=user_id,
            cancelled=summary.cancelled,
            completed=summary.completed,
            failed=summary.failed,
            cleared_completed=summary.cleared_completed,
            refunded=summary.refunded_credits,
        )
        return summary

    async def _clear_one(self, generation: Generation, summary: ClearQueueResult) -> None:
        status = GenerationStatus(generation.status)
        if status == GenerationStatus.PENDING:
            summary.refunded_credits += await self._settle_failure(generation.id, status, CANCELLED_MESSAGE)
            summary.cancelled += 1
            return

        if status == GenerationStatus.COMPLETED:
            await self._settle_failure(
                generation.id,
                status,
                CANCELLED_MESSAGE,
                refund=False,
                flags={'cleared_after_completion': True},
            )
            summary.cleared_completed += 1
            return

        result: Optional[ProviderResult] = None
        try:
            adapter = self._adapter(generation.provider)
            if generation.external_handle:
                result = await adapter.check_status(generation.external_handle, generation.model)
        except ProviderError as exc:
            logger.warning('clear_queue_check_failed', generation_id=generation.id, error=exc.message)

        if result is not None and result.status == ProviderStatus.SUCCEEDED and result.outputs:
            await self._complete(generation, result.outputs)
            summary.completed += 1
        elif result is not None and result.status != ProviderStatus.PENDING:
            message = result.error or NO_OUTPUT_MESSAGE
            summary.refunded_credits += await self._settle_failure(generation.id, status, message)
            summary.failed += 1
        else:
            summary.refunded_credits += await self._settle_failure(generation.id, status, CANCELLED_MESSAGE)
            summary.cancelled += 1

    async def force_fail(
        self,
        generation_id: int,
        message: str = 'Cancelled by administrator',
        refund: bool = False,
    ) -> Generation:
        """Fail a single record regardless of provider state.

        Unfinished work is always refunded. A COMPLETED record is refunded only
        when ``refund`` is set; otherwise it is flagged as cleared after
        completion.
        """
        generation = await self.get_generation(generation_id)
        status = GenerationStatus(generation.status)
        if status == GenerationStatus.FAILED:
            return generation
        flags = None
        if status == GenerationStatus.COMPLETED:
            if not refund:
                flags = {'cleared_after_completion': True}
        else:
            refund = True
        try:
            await self._settle_failure(generation_id, status, message, refund=refund, flags=flags)
        except ReconciliationConflict:
            logger.info('force_fail_conflict', generation_id=generation_id)
        return await self.get_generation(generation_id)

    # Reads

    async def get_generation(self, generation_id: int, user_id: int | None = None) -> Generation:
        async with self.sessionmaker() as session:
            generation = await GenerationStore(session).get_by_id(generation_id, user_id=user_id)
        if generation is None:
            raise NotFound(f'Generation {generation_id} not found')
        return generation

    async def get_balance(self, user_id: int) -> int:
        async with self.sessionmaker() as session:
            return await LedgerService(session).get_balance(user_id)

    async def get_history(self, user_id: int, page: int = 1, limit: int = 20) -> GenerationPage:
        async with self.sessionmaker() as session:
            return await GenerationStore(session).history(user_id, page, limit)

    async def get_ledger(self, user_id: int, page: int = 1, limit: int = 50) -> LedgerPage:
        async with self.sessionmaker() as session:
            return await LedgerService(session).history(user_id, page, limit)
