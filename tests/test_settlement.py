import pytest
from sqlalchemy import func, select

from mediaforge.db.models import ArchivedAsset, CreditLedger, Generation
from mediaforge.errors import InsufficientCredits, InvalidInput, NotFound, ProviderRejected, ProviderUnavailable
from mediaforge.kinds import GenerationKind, GenerationStatus, LedgerKind
from mediaforge.providers.base import ProviderResult, ProviderStatus
from mediaforge.services.generations import GenerationStore
from mediaforge.services.ledger import LedgerService
from mediaforge.services.settlement import SettlementEngine, refund_key

pytestmark = pytest.mark.asyncio

IMAGE_URL = "https://cdn.test/out/a.png"


def succeeded(*urls):
    return ProviderResult(ProviderStatus.SUCCEEDED, outputs=list(urls))


def failed(error="provider exploded"):
    return ProviderResult(ProviderStatus.FAILED, error=error)


async def ledger_entries(sessionmaker, user_id):
    async with sessionmaker() as session:
        result = await session.execute(
            select(CreditLedger).where(CreditLedger.user_id == user_id).order_by(CreditLedger.id)
        )
        return list(result.scalars().all())


async def asset_count(sessionmaker, generation_id):
    async with sessionmaker() as session:
        result = await session.execute(
            select(func.count(ArchivedAsset.id)).where(ArchivedAsset.generation_id == generation_id)
        )
        return int(result.scalar_one())


async def assert_conserved(sessionmaker, user_id):
    async with sessionmaker() as session:
        audit = await LedgerService(session).audit(user_id)
    assert audit.consistent, audit


async def refunds_for(sessionmaker, generation_id):
    async with sessionmaker() as session:
        result = await session.execute(
            select(CreditLedger).where(
                CreditLedger.generation_id == generation_id,
                CreditLedger.kind == LedgerKind.REFUND.value,
            )
        )
        return list(result.scalars().all())


async def test_start_debits_and_submits(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"}, context_ref="msg-9")

    assert generation.status == GenerationStatus.PROCESSING.value
    assert generation.external_handle == "wavespeed-1"
    assert generation.cost_credits == 5
    assert generation.provider == "wavespeed"
    assert generation.model == "bytedance/seedream-v4"
    assert generation.meta["model_key"] == "seedream_v4"
    assert await engine.get_balance(user_id) == 15

    kind, request = wavespeed.submitted[0]
    assert kind == GenerationKind.IMAGE_FROM_TEXT
    assert request.prompt == "cat"

    entries = await ledger_entries(engine.sessionmaker, user_id)
    assert [(e.kind, e.amount) for e in entries] == [("CREDIT", 20), ("DEBIT", -5)]
    assert entries[-1].generation_id == generation.id
    await assert_conserved(engine.sessionmaker, user_id)


async def test_success_completes_once_and_archives(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, GenerationKind.IMAGE_FROM_TEXT, {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = succeeded(IMAGE_URL)

    outcome = await engine.reconcile(generation.id)
    assert outcome.changed
    assert outcome.generation.status == GenerationStatus.COMPLETED.value
    assert outcome.generation.result_url == IMAGE_URL
    assert outcome.generation.result_urls == [IMAGE_URL]
    assert outcome.generation.finished_at is not None
    assert await asset_count(engine.sessionmaker, generation.id) == 1

    again = await engine.reconcile(generation.id)
    assert not again.changed
    assert await asset_count(engine.sessionmaker, generation.id) == 1
    assert len(await ledger_entries(engine.sessionmaker, user_id)) == 2
    assert await engine.get_balance(user_id) == 15


async def test_insufficient_credits_creates_nothing(engine, wavespeed, make_user):
    user_id = await make_user(3)
    with pytest.raises(InsufficientCredits) as excinfo:
        await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    assert excinfo.value.required == 5
    assert excinfo.value.available == 3
    assert wavespeed.submitted == []
    assert await engine.get_balance(user_id) == 3
    history = await engine.get_history(user_id)
    assert history.total == 0


async def test_video_is_priced_after_clamping(engine, kie, make_user):
    user_id = await make_user(5)
    with pytest.raises(InsufficientCredits) as excinfo:
        await engine.start(user_id, "video-from-text", {"prompt": "storm"}, duration_hint=6)
    assert excinfo.value.required == 50
    assert kie.submitted == []


async def test_video_duration_clamped_and_recorded(engine, kie, make_user):
    user_id = await make_user(100)
    generation = await engine.start(user_id, "video-from-text", {"prompt": "storm"}, duration_hint=20)
    assert generation.provider == "kie"
    assert generation.duration_seconds == 8
    assert generation.cost_credits == 50
    assert generation.meta["requested_duration"] == 20
    assert kie.submitted[0][1].duration_seconds == 8


async def test_invalid_input_rejected_before_debit(engine, make_user):
    user_id = await make_user(100)
    with pytest.raises(InvalidInput):
        await engine.start(user_id, "image-from-image", {"prompt": "no source"})
    with pytest.raises(InvalidInput):
        await engine.start(user_id, "audio-from-text", {"text": "hello"})
    with pytest.raises(InvalidInput):
        await engine.start(user_id, "teleport", {"prompt": "x"})
    assert await engine.get_balance(user_id) == 100


async def test_unknown_user(engine):
    with pytest.raises(NotFound):
        await engine.start(424242, "image-from-text", {"prompt": "cat"})


async def test_rejected_submission_fails_and_refunds(engine, wavespeed, make_user):
    user_id = await make_user(20)
    wavespeed.submit_errors.append(ProviderRejected("prompt refused", provider="wavespeed", status_code=400))
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})

    assert generation.status == GenerationStatus.FAILED.value
    assert "prompt refused" in generation.error_message
    assert len(wavespeed.submitted) == 1
    assert await engine.get_balance(user_id) == 20
    refunds = await refunds_for(engine.sessionmaker, generation.id)
    assert len(refunds) == 1
    assert refunds[0].amount == 5
    assert refunds[0].idempotency_key == refund_key(generation.id)
    await assert_conserved(engine.sessionmaker, user_id)


async def test_unavailable_submission_is_retried(engine, wavespeed, make_user):
    user_id = await make_user(20)
    wavespeed.submit_errors.append(ProviderUnavailable("timeout", provider="wavespeed"))
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    assert generation.status == GenerationStatus.PROCESSING.value
    assert len(wavespeed.submitted) == 2


async def test_exhausted_retries_fail_and_refund(engine, wavespeed, make_user):
    user_id = await make_user(20)
    wavespeed.submit_errors.extend([
        ProviderUnavailable("timeout", provider="wavespeed"),
        ProviderUnavailable("timeout", provider="wavespeed"),
    ])
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    assert generation.status == GenerationStatus.FAILED.value
    assert len(wavespeed.submitted) == 2
    assert await engine.get_balance(user_id) == 20


async def test_submit_attempts_follow_setting(sessionmaker, wavespeed, kie, archiver, settings, make_user):
    engine = SettlementEngine(
        sessionmaker,
        {"wavespeed": wavespeed, "kie": kie},
        archiver,
        settings.model_copy(update={"submit_max_attempts": 3}),
    )
    user_id = await make_user(20)
    wavespeed.submit_errors.extend([ProviderUnavailable("timeout", provider="wavespeed")] * 3)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    assert generation.status == GenerationStatus.FAILED.value
    assert len(wavespeed.submitted) == 3
    assert len(await refunds_for(sessionmaker, generation.id)) == 1
    assert await engine.get_balance(user_id) == 20


async def test_unexpected_submit_error_refunds_and_propagates(engine, wavespeed, make_user):
    user_id = await make_user(20)
    wavespeed.submit_errors.append(RuntimeError("adapter bug"))
    with pytest.raises(RuntimeError):
        await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    history = await engine.get_history(user_id)
    assert history.items[0].status == GenerationStatus.FAILED.value
    assert await engine.get_balance(user_id) == 20


async def test_archival_failure_keeps_completed_without_refund(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = succeeded(
        "https://cdn.test/out/missing.bin", IMAGE_URL, "https://cdn.test/out/b.png"
    )

    outcome = await engine.reconcile(generation.id)
    assert outcome.changed
    assert outcome.generation.status == GenerationStatus.COMPLETED.value
    assert await asset_count(engine.sessionmaker, generation.id) == 2
    assert await refunds_for(engine.sessionmaker, generation.id) == []
    assert await engine.get_balance(user_id) == 15
    await assert_conserved(engine.sessionmaker, user_id)


async def test_provider_failure_refunds_exactly_once(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = failed("nsfw detected")

    outcome = await engine.reconcile(generation.id)
    assert outcome.changed
    assert outcome.generation.status == GenerationStatus.FAILED.value
    assert outcome.generation.error_message == "nsfw detected"
    assert await engine.get_balance(user_id) == 20

    await engine.reconcile(generation.id)
    assert len(await refunds_for(engine.sessionmaker, generation.id)) == 1
    await assert_conserved(engine.sessionmaker, user_id)


async def test_success_without_outputs_counts_as_failure(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = succeeded()
    outcome = await engine.reconcile(generation.id)
    assert outcome.generation.status == GenerationStatus.FAILED.value
    assert await engine.get_balance(user_id) == 20


async def test_pending_and_transient_errors_change_nothing(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})

    outcome = await engine.reconcile(generation.id)
    assert not outcome.changed
    assert outcome.generation.status == GenerationStatus.PROCESSING.value

    wavespeed.results[generation.external_handle] = ProviderUnavailable("502", provider="wavespeed")
    outcome = await engine.reconcile(generation.id)
    assert not outcome.changed
    assert outcome.generation.status == GenerationStatus.PROCESSING.value
    assert await engine.get_balance(user_id) == 15


async def test_processing_timeout_fails_with_refund(sessionmaker, wavespeed, kie, archiver, settings, make_user):
    short = settings.model_copy(update={"processing_timeout_seconds": 0})
    engine = SettlementEngine(sessionmaker, {"wavespeed": wavespeed, "kie": kie}, archiver, short)
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})

    outcome = await engine.reconcile(generation.id)
    assert outcome.changed
    assert outcome.generation.status == GenerationStatus.FAILED.value
    assert outcome.generation.error_message == "Generation timed out"
    assert await engine.get_balance(user_id) == 20


async def test_racing_reconciles_complete_once(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = succeeded(IMAGE_URL)
    inner = {}

    async def race(handle):
        # The second reconciler settles the record while the first one is
        # still waiting on the provider.
        wavespeed.on_check = None
        inner["outcome"] = await engine.reconcile(generation.id)

    wavespeed.on_check = race
    outer = await engine.reconcile(generation.id)

    assert inner["outcome"].changed
    assert not outer.changed
    assert outer.generation.status == GenerationStatus.COMPLETED.value
    assert await asset_count(engine.sessionmaker, generation.id) == 1


async def test_racing_reconciles_refund_once(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = failed()
    inner = {}

    async def race(handle):
        wavespeed.on_check = None
        inner["outcome"] = await engine.reconcile(generation.id)

    wavespeed.on_check = race
    outer = await engine.reconcile(generation.id)

    assert inner["outcome"].changed
    assert not outer.changed
    assert len(await refunds_for(engine.sessionmaker, generation.id)) == 1
    assert await engine.get_balance(user_id) == 20
    await assert_conserved(engine.sessionmaker, user_id)


async def test_reconcile_all_for_user(engine, wavespeed, make_user):
    user_id = await make_user(50)
    first = await engine.start(user_id, "image-from-text", {"prompt": "one"})
    second = await engine.start(user_id, "image-from-text", {"prompt": "two"})
    wavespeed.results[first.external_handle] = succeeded(IMAGE_URL)
    wavespeed.results[second.external_handle] = failed()

    outcomes = await engine.reconcile_all_for_user(user_id)
    statuses = {o.generation.id: o.generation.status for o in outcomes}
    assert statuses == {
        first.id: GenerationStatus.COMPLETED.value,
        second.id: GenerationStatus.FAILED.value,
    }
    assert await engine.get_balance(user_id) == 45


async def test_reconcile_all_for_user_continues_past_errors(engine, wavespeed, make_user):
    user_id = await make_user(50)
    broken = await engine.start(user_id, "image-from-text", {"prompt": "one"})
    healthy = await engine.start(user_id, "image-from-text", {"prompt": "two"})
    wavespeed.results[broken.external_handle] = RuntimeError("adapter bug")
    wavespeed.results[healthy.external_handle] = succeeded(IMAGE_URL)

    outcomes = await engine.reconcile_all_for_user(user_id)
    assert [o.generation.id for o in outcomes] == [healthy.id]
    assert outcomes[0].generation.status == GenerationStatus.COMPLETED.value
    assert (await engine.get_generation(broken.id)).status == GenerationStatus.PROCESSING.value
    assert await engine.get_balance(user_id) == 40
    await assert_conserved(engine.sessionmaker, user_id)


async def test_wait_for_completion_returns_terminal_record(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = [
        ProviderResult.pending(),
        ProviderResult.pending(),
        succeeded(IMAGE_URL),
    ]
    result = await engine.wait_for_completion(generation.id, max_attempts=5, interval=0)
    assert result.status == GenerationStatus.COMPLETED.value
    assert len(wavespeed.checks) == 3


async def test_wait_for_completion_times_out_with_refund(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    result = await engine.wait_for_completion(generation.id, max_attempts=3, interval=0)
    assert result.status == GenerationStatus.FAILED.value
    assert result.error_message == "Generation timed out"
    assert len(wavespeed.checks) == 3
    assert await engine.get_balance(user_id) == 20


async def _crashed_start(sessionmaker, user_id, cost=5):
    # Debit and record committed, then the process died before submitting.
    async with sessionmaker() as session:
        generation = await GenerationStore(session).create(
            user_id=user_id,
            kind=GenerationKind.IMAGE_FROM_TEXT,
            prompt="lost",
            provider="wavespeed",
            model="bytedance/seedream-v4",
            cost_credits=cost,
        )
        await LedgerService(session).deduct(user_id, cost, "image-from-text generation", generation_id=generation.id)
        await session.commit()
        return generation.id


async def test_sweep_expires_stale_pending_and_reconciles(sessionmaker, wavespeed, kie, archiver, settings, make_user):
    engine = SettlementEngine(
        sessionmaker,
        {"wavespeed": wavespeed, "kie": kie},
        archiver,
        settings.model_copy(update={"pending_stale_seconds": 0}),
    )
    user_id = await make_user(30)
    stale_id = await _crashed_start(sessionmaker, user_id)
    running = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[running.external_handle] = succeeded(IMAGE_URL)

    result = await engine.sweep()
    assert result.expired == 1
    assert result.checked == 1
    assert result.changed == 1

    stale = await engine.get_generation(stale_id)
    assert stale.status == GenerationStatus.FAILED.value
    assert (await engine.get_generation(running.id)).status == GenerationStatus.COMPLETED.value
    assert await engine.get_balance(user_id) == 25
    await assert_conserved(sessionmaker, user_id)


async def test_clear_queue_policy(engine, wavespeed, make_user):
    user_id = await make_user(100)
    pending_id = await _crashed_start(engine.sessionmaker, user_id)
    stuck = await engine.start(user_id, "image-from-text", {"prompt": "stuck"})
    finished_remotely = await engine.start(user_id, "image-from-text", {"prompt": "done remotely"})
    delivered = await engine.start(user_id, "image-from-text", {"prompt": "delivered"})
    wavespeed.results[finished_remotely.external_handle] = succeeded("https://cdn.test/out/b.png")
    wavespeed.results[delivered.external_handle] = succeeded(IMAGE_URL)
    await engine.reconcile(delivered.id)
    assert await engine.get_balance(user_id) == 80

    result = await engine.clear_queue(user_id)
    assert result.cancelled == 2
    assert result.completed == 1
    assert result.cleared_completed == 1
    assert result.refunded_credits == 10
    assert set(result.generation_ids) == {pending_id, stuck.id, finished_remotely.id, delivered.id}

    assert (await engine.get_generation(pending_id)).error_message == "Cancelled by user"
    assert (await engine.get_generation(stuck.id)).status == GenerationStatus.FAILED.value
    assert (await engine.get_generation(finished_remotely.id)).status == GenerationStatus.COMPLETED.value
    cleared = await engine.get_generation(delivered.id)
    assert cleared.status == GenerationStatus.FAILED.value
    assert cleared.meta["cleared_after_completion"] is True
    assert await refunds_for(engine.sessionmaker, delivered.id) == []
    assert await engine.get_balance(user_id) == 90
    await assert_conserved(engine.sessionmaker, user_id)


async def test_clear_queue_refunds_provider_failure(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = failed("boom")
    result = await engine.clear_queue(user_id)
    assert result.failed == 1
    assert (await engine.get_generation(generation.id)).error_message == "boom"
    assert await engine.get_balance(user_id) == 20


async def test_force_fail(engine, wavespeed, make_user):
    user_id = await make_user(20)
    running = await engine.start(user_id, "image-from-text", {"prompt": "a"})
    done = await engine.start(user_id, "image-from-text", {"prompt": "b"})
    wavespeed.results[done.external_handle] = succeeded(IMAGE_URL)
    await engine.reconcile(done.id)

    failed_running = await engine.force_fail(running.id, "Stuck at provider")
    assert failed_running.status == GenerationStatus.FAILED.value
    assert await engine.get_balance(user_id) == 15

    refunded_done = await engine.force_fail(done.id, "Broken output", refund=True)
    assert refunded_done.status == GenerationStatus.FAILED.value
    assert await engine.get_balance(user_id) == 20

    again = await engine.force_fail(done.id, "twice", refund=True)
    assert again.error_message == "Broken output"
    assert await engine.get_balance(user_id) == 20


async def test_terminal_records_are_not_reconciled(engine, wavespeed, make_user):
    user_id = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    wavespeed.results[generation.external_handle] = failed()
    await engine.reconcile(generation.id)
    checks = len(wavespeed.checks)

    wavespeed.results[generation.external_handle] = succeeded(IMAGE_URL)
    outcome = await engine.reconcile(generation.id)
    assert not outcome.changed
    assert outcome.generation.status == GenerationStatus.FAILED.value
    assert len(wavespeed.checks) == checks


async def test_read_paths(engine, make_user):
    user_id = await make_user(20)
    other = await make_user(20)
    generation = await engine.start(user_id, "image-from-text", {"prompt": "cat"})
    assert (await engine.get_generation(generation.id, user_id=user_id)).id == generation.id
    with pytest.raises(NotFound):
        await engine.get_generation(generation.id, user_id=other)
    ledger = await engine.get_ledger(user_id)
    assert ledger.items[0].kind == LedgerKind.DEBIT.value
    async with engine.sessionmaker() as session:
        count = await session.execute(select(func.count(Generation.id)))
    assert count.scalar_one() == 1
