"""Tests for RetryOrchestrator: single-flight claims, backoff, exhaustion and recovery."""

import asyncio
import uuid
from datetime import timedelta
from functools import partial

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from submission_monitor.core.exceptions import ConflictError, NotFoundError, ValidationError
from submission_monitor.db.base import utcnow
from submission_monitor.db.models.retry_task import RetryTask
from submission_monitor.db.models.submission import Submission
from submission_monitor.domain.retry import CircuitBreaker, CircuitState, RetryPolicy, RetryTrigger

pytestmark = pytest.mark.unit


async def _always_fail(ctx):
    raise ConnectionError("council mail server refused connection")


def _soon():
    # Tasks opened by the failed-event intake become eligible at wall-clock now
    return utcnow() + timedelta(seconds=1)


async def _seed_failure(monitor, make_submission, stage="council_delivery"):
    """Record a short history ending in a failure; returns the id and the task it opened."""
    base = utcnow()
    sid = await make_submission()
    await monitor.tracker.track_progress(sid, "submission_created", "completed", occurred_at=base - timedelta(hours=1))
    await monitor.tracker.track_progress(
        sid, "document_generation", "completed", occurred_at=base - timedelta(minutes=50)
    )
    await monitor.tracker.track_progress(sid, stage, "failed", detail="SMTP timeout", occurred_at=base - timedelta(minutes=1))
    (task,) = await monitor.orchestrator.list_tasks(submission_id=sid)
    return sid, task


async def test_failed_event_opens_queued_task(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    _, task = await _seed_failure(monitor, make_submission)

    assert task.status == "queued"
    assert task.trigger == "failed_event"
    assert task.attempt_count == 0
    assert task.last_error == "SMTP timeout"


async def test_enqueue_returns_existing_active_task(monitor, make_submission, registry):
    registry.register("review_preparation", _always_fail)
    sid = await make_submission()
    now = utcnow()

    first = await monitor.orchestrator.enqueue(sid, "review_preparation", now=now)
    second = await monitor.orchestrator.enqueue(sid, "review_preparation", trigger=RetryTrigger.MANUAL, now=now)

    assert first.id == second.id
    assert second.trigger == "failed_event"


async def test_claim_is_single_flight(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    _, task = await _seed_failure(monitor, make_submission)
    now = _soon()

    results = await asyncio.gather(
        monitor.orchestrator.claim(task.id, now),
        monitor.orchestrator.claim(task.id, now),
    )

    assert sorted(results) == [False, True]
    claimed = await monitor.orchestrator.get_task(task.id)
    assert claimed.status == "in_flight"
    assert claimed.attempt_count == 0


async def test_claim_respects_next_eligible_at(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    sid = await make_submission()
    now = utcnow()
    task = await monitor.orchestrator.enqueue(sid, "council_delivery", now=now)

    assert await monitor.orchestrator.claim(task.id, now - timedelta(seconds=1)) is False
    assert await monitor.orchestrator.claim(task.id, now) is True


async def test_success_records_completed_event_and_passes_context(monitor, make_submission, registry):
    seen = []

    async def deliver(ctx):
        seen.append(ctx)

    registry.register("council_delivery", deliver)
    sid, task = await _seed_failure(monitor, make_submission)

    summary = await monitor.orchestrator.run_once(_soon())

    assert summary.succeeded == 1
    done = await monitor.orchestrator.get_task(task.id)
    assert done.status == "succeeded"
    assert done.attempt_count == 1

    (ctx,) = seen
    assert ctx.submission_id == sid
    assert ctx.attempt == 1
    assert ctx.last_good_event.stage == "document_generation"
    assert ctx.snapshot.latest_stage == "council_delivery"
    assert ctx.last_error == "SMTP timeout"

    latest = await monitor.tracker.event_store.latest_for(sid)
    assert (latest.stage, latest.status) == ("council_delivery", "completed")
    assert latest.event_metadata["retry_task_id"] == str(task.id)
    snapshot = await monitor.tracker.get_snapshot(sid)
    assert snapshot.status == "completed"


async def test_backoff_increases_until_exhausted(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    sid, task = await _seed_failure(monitor, make_submission)
    max_attempts = monitor.orchestrator.policy.max_attempts

    now = _soon()
    delays = []
    for attempt in range(1, max_attempts + 1):
        summary = await monitor.orchestrator.run_once(now)
        assert summary.attempted == 1
        current = await monitor.orchestrator.get_task(task.id)
        assert current.attempt_count == attempt
        if attempt < max_attempts:
            assert current.status == "queued"
            delays.append(current.next_eligible_at - now)
            now = current.next_eligible_at
        else:
            assert current.status == "exhausted"

    assert all(a < b for a, b in zip(delays, delays[1:]))

    # Exhausted tasks are never dequeued again
    later = await monitor.orchestrator.run_once(now + timedelta(days=30))
    assert later.attempted == 0

    events = await monitor.tracker.event_store.query_by_submission(sid)
    attempts = [e.event_metadata["attempt"] for e in events if e.event_metadata and "attempt" in e.event_metadata]
    assert attempts == list(range(1, max_attempts + 1))
    assert events[-1].event_metadata["exhausted"] is True
    # Failures recorded by the orchestrator do not open further tasks
    assert len(await monitor.orchestrator.list_tasks(submission_id=sid)) == 1


async def test_task_not_eligible_during_backoff(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    _, task = await _seed_failure(monitor, make_submission)
    now = _soon()

    await monitor.orchestrator.run_once(now)
    summary = await monitor.orchestrator.run_once(now + timedelta(seconds=30))

    assert summary.attempted == 0
    assert (await monitor.orchestrator.get_task(task.id)).attempt_count == 1


async def test_missing_operation_counts_as_failed_attempt(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    _, task = await _seed_failure(monitor, make_submission)
    registry._operations.clear()

    summary = await monitor.orchestrator.run_once(_soon())

    assert summary.requeued == 1
    assert "No retry operation" in (await monitor.orchestrator.get_task(task.id)).last_error


async def test_operation_timeout_counts_as_failure(monitor, make_submission, registry):
    async def hang(ctx):
        await asyncio.sleep(5)

    registry.register("council_delivery", hang)
    monitor.orchestrator.operation_timeout_seconds = 0.05
    _, task = await _seed_failure(monitor, make_submission)

    summary = await monitor.orchestrator.run_once(_soon())

    assert summary.requeued == 1
    current = await monitor.orchestrator.get_task(task.id)
    assert current.attempt_count == 1
    assert current.last_error == "TimeoutError"


async def test_cancellation_rolls_task_back_to_queued(monitor, make_submission, registry):
    started = asyncio.Event()

    async def slow(ctx):
        started.set()
        await asyncio.sleep(30)

    registry.register("council_delivery", slow)
    _, task = await _seed_failure(monitor, make_submission)

    runner = asyncio.create_task(monitor.orchestrator.run_once(_soon()))
    await started.wait()
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    current = await monitor.orchestrator.get_task(task.id)
    assert current.status == "queued"
    assert current.attempt_count == 0


async def test_expired_lease_is_reclaimed(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    _, task = await _seed_failure(monitor, make_submission)
    now = _soon()
    assert await monitor.orchestrator.claim(task.id, now)

    lease = monitor.orchestrator.lease_seconds
    assert await monitor.orchestrator.reclaim_expired_leases(now + timedelta(seconds=lease - 1)) == 0
    assert await monitor.orchestrator.reclaim_expired_leases(now + timedelta(seconds=lease + 1)) == 1

    current = await monitor.orchestrator.get_task(task.id)
    assert current.status == "queued"
    assert current.attempt_count == 0


async def test_requeue_exhausted_task(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    monitor.orchestrator.policy = RetryPolicy(max_attempts=1)
    _, task = await _seed_failure(monitor, make_submission)

    with pytest.raises(ConflictError):
        await monitor.orchestrator.requeue(task.id)

    now = _soon()
    await monitor.orchestrator.run_once(now)
    assert (await monitor.orchestrator.get_task(task.id)).status == "exhausted"

    requeued = await monitor.orchestrator.requeue(task.id, now=now + timedelta(hours=1))
    assert requeued.status == "queued"
    assert requeued.attempt_count == 0
    assert requeued.trigger == "manual"

    with pytest.raises(NotFoundError):
        await monitor.orchestrator.requeue(uuid.uuid4())


async def test_requeue_conflicts_with_new_active_task(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    monitor.orchestrator.policy = RetryPolicy(max_attempts=1)
    sid, task = await _seed_failure(monitor, make_submission)
    await monitor.orchestrator.run_once(_soon())

    # A fresh failure opens a new task for the same pair
    await monitor.tracker.track_progress(sid, "council_delivery", "failed", detail="bounce")

    with pytest.raises(ConflictError):
        await monitor.orchestrator.requeue(task.id)


async def test_statistics(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    monitor.orchestrator.policy = RetryPolicy(max_attempts=1)
    await _seed_failure(monitor, make_submission)
    await _seed_failure(monitor, make_submission)
    now = _soon()
    await monitor.orchestrator.run_once(now)

    stats = await monitor.orchestrator.statistics(hours=24, now=now)

    assert stats.total == 2
    assert stats.exhausted == 2
    (stage,) = stats.stages
    assert stage.stage == "council_delivery"
    assert stage.avg_attempts == 1.0

    with pytest.raises(ValidationError):
        await monitor.orchestrator.statistics(hours=0)
    with pytest.raises(ValidationError):
        await monitor.orchestrator.statistics(hours=169)


async def _deliver(ctx):
    return None


async def test_task_ceiling_is_the_one_stored_on_the_task(monitor, make_submission, registry, session_factory):
    registry.register("council_delivery", _always_fail)
    _, task = await _seed_failure(monitor, make_submission)
    async with session_factory() as session:
        await session.execute(update(RetryTask).where(RetryTask.id == task.id).values(max_attempts=1))
        await session.commit()

    summary = await monitor.orchestrator.run_once(_soon())

    assert monitor.orchestrator.policy.max_attempts == 5
    assert summary.exhausted == 1
    assert (await monitor.orchestrator.get_task(task.id)).status == "exhausted"


async def test_success_settles_task_when_submission_was_withdrawn(monitor, make_submission, registry, session_factory):
    async def deliver_after_withdrawal(ctx):
        async with session_factory() as session:
            await session.execute(delete(Submission).where(Submission.id == ctx.submission_id))
            await session.commit()

    registry.register("council_delivery", deliver_after_withdrawal)
    sid, task = await _seed_failure(monitor, make_submission)
    now = _soon()

    summary = await monitor.orchestrator.run_once(now)

    assert summary.succeeded == 1
    assert (await monitor.orchestrator.get_task(task.id)).status == "succeeded"
    # Nothing left to re-run once the lease would have expired
    lease = timedelta(seconds=monitor.orchestrator.lease_seconds + 1)
    assert (await monitor.orchestrator.run_once(now + lease)).attempted == 0
    latest = await monitor.tracker.event_store.latest_for(sid)
    assert latest.status == "failed"


async def test_failure_counts_attempt_when_submission_was_withdrawn(monitor, make_submission, registry, session_factory):
    async def withdraw_then_fail(ctx):
        async with session_factory() as session:
            await session.execute(delete(Submission).where(Submission.id == ctx.submission_id))
            await session.commit()
        raise ConnectionError("council mail server refused connection")

    registry.register("council_delivery", withdraw_then_fail)
    _, task = await _seed_failure(monitor, make_submission)

    summary = await monitor.orchestrator.run_once(_soon())

    assert summary.requeued == 1
    current = await monitor.orchestrator.get_task(task.id)
    assert (current.status, current.attempt_count) == ("queued", 1)


async def test_error_in_one_task_does_not_abandon_the_batch(monitor, make_submission, registry, monkeypatch):
    registry.register("council_delivery", _deliver)
    _, broken = await _seed_failure(monitor, make_submission)
    _, healthy = await _seed_failure(monitor, make_submission)
    real_execute = monitor.orchestrator._execute

    async def execute(task_id, now):
        if task_id == broken.id:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return await real_execute(task_id, now)

    monkeypatch.setattr(monitor.orchestrator, "_execute", execute)

    summary = await monitor.orchestrator.run_once(_soon())

    assert (summary.errored, summary.succeeded) == (1, 1)
    assert (await monitor.orchestrator.get_task(healthy.id)).status == "succeeded"
    assert (await monitor.orchestrator.get_task(broken.id)).status == "in_flight"


async def test_open_circuit_keeps_stage_tasks_queued(monitor, make_submission, registry):
    registry.register("council_delivery", _always_fail)
    monitor.orchestrator.breaker_factory = partial(CircuitBreaker, failure_threshold=2, open_seconds=600)
    tasks = [(await _seed_failure(monitor, make_submission))[1] for _ in range(3)]
    now = _soon()

    first = await monitor.orchestrator.run_once(now)
    assert (first.attempted, first.deferred) == (2, 1)
    assert (await monitor.orchestrator.get_task(tasks[2].id)).attempt_count == 0
    stats = await monitor.orchestrator.statistics(now=now)
    assert stats.circuits == {"council_delivery": "open"}

    # Backoff has elapsed for the first two, the circuit has not
    blocked = await monitor.orchestrator.run_once(now + timedelta(minutes=5))
    assert (blocked.attempted, blocked.deferred) == (0, 3)

    # Half-open lets one attempt through; its failure reopens the circuit
    trial = await monitor.orchestrator.run_once(now + timedelta(minutes=11))
    assert (trial.attempted, trial.deferred) == (1, 2)
    assert monitor.orchestrator.breaker("council_delivery").state == CircuitState.OPEN
