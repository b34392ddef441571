"""Tests for StageTracker: event recording, snapshot maintenance and timelines."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from submission_monitor.core.exceptions import NotFoundError, ValidationError
from submission_monitor.db.models.retry_task import RetryTask
from submission_monitor.domain.progress import derive_snapshot
from submission_monitor.schemas.health import HealthStatus
from submission_monitor.services.engine import build_engine
from submission_monitor.services.probes import EventStoreProbe

pytestmark = pytest.mark.unit

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


async def _noop(ctx):
    return None


async def test_rejects_unknown_stage_and_status(monitor, make_submission):
    sid = await make_submission()
    with pytest.raises(ValidationError):
        await monitor.tracker.track_progress(sid, "printing", "completed")
    with pytest.raises(ValidationError):
        await monitor.tracker.track_progress(sid, "review", "done")


async def test_rejects_unknown_submission(monitor):
    with pytest.raises(NotFoundError):
        await monitor.tracker.track_progress(uuid.uuid4(), "review", "pending")


async def test_records_event_and_snapshot(monitor, make_submission):
    project = uuid.uuid4()
    sid = await make_submission(project_id=project, pathway="review")

    record = await monitor.tracker.track_progress(
        sid, "document_generation", "in_progress", metadata={"template": "v2"}, occurred_at=T0
    )

    assert record.stage == "document_generation"
    assert record.metadata == {"template": "v2"}
    snapshot = await monitor.tracker.get_snapshot(sid)
    assert snapshot.project_id == project
    assert snapshot.pathway == "review"
    assert snapshot.status == "in_progress"
    assert snapshot.last_event_at == T0


async def test_snapshot_matches_rederivation_after_out_of_order_writes(monitor, make_submission):
    sid = await make_submission()
    tracker = monitor.tracker
    await tracker.track_progress(sid, "submission_created", "completed", occurred_at=T0)
    await tracker.track_progress(sid, "review", "in_progress", occurred_at=T0 + timedelta(minutes=30))
    await tracker.track_progress(sid, "document_generation", "failed", occurred_at=T0 + timedelta(minutes=5))
    await tracker.track_progress(sid, "document_generation", "completed", occurred_at=T0 + timedelta(minutes=10))

    incremental = await tracker.get_snapshot(sid)
    events = await tracker.event_store.query_by_submission(sid)
    derived = derive_snapshot(events, tracker.terminal_stages)

    assert incremental.latest_stage == derived.latest_stage == "review"
    assert incremental.status == derived.status == "in_progress"
    assert incremental.failed_events == derived.failed_events == 1
    assert incremental.first_event_at == derived.first_event_at

    rebuilt = await tracker.rebuild_snapshot(sid)
    assert rebuilt == incremental


async def test_persistence_failure_is_swallowed_and_counted(monitor, make_submission, monkeypatch):
    sid = await make_submission()

    async def broken_append(event, session=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr(monitor.tracker.event_store, "append", broken_append)

    result = await monitor.tracker.track_progress(sid, "review", "pending")

    assert result is None
    assert monitor.tracker.write_failures == 1
    assert "disk full" in monitor.tracker.last_write_error


async def test_unreachable_store_is_swallowed_and_counted(settings, dead_session_factory, redis_client):
    engine = build_engine(settings, dead_session_factory, redis_client)
    probe = EventStoreProbe(engine.tracker)

    result = await engine.tracker.track_progress(uuid.uuid4(), "document_generation", "failed")

    assert result is None
    assert engine.tracker.write_failures == 1
    assert engine.tracker.last_write_error.startswith("OperationalError")
    assert (await probe.check(1000)).status == HealthStatus.DEGRADED


async def test_transient_write_error_is_retried(monitor, make_submission, monkeypatch):
    sid = await make_submission()
    store = monitor.tracker.event_store
    real_append = store.append
    calls = {"n": 0}

    async def flaky_append(event, session=None):
        calls["n"] += 1
        if calls["n"] < 3:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await real_append(event, session=session)

    monkeypatch.setattr(store, "append", flaky_append)

    result = await monitor.tracker.track_progress(sid, "review", "pending", occurred_at=T0)

    assert result is not None
    assert calls["n"] == 3
    assert monitor.tracker.write_failures == 0
    assert len(await store.query_by_submission(sid)) == 1


async def test_get_timeline_labels_and_order(monitor, make_submission):
    sid = await make_submission()
    await monitor.tracker.track_progress(sid, "review", "pending", occurred_at=T0 + timedelta(minutes=2))
    await monitor.tracker.track_progress(sid, "submission_created", "completed", occurred_at=T0)

    timeline = await monitor.tracker.get_timeline(sid)

    assert [(e.stage, e.status) for e in timeline.timeline] == [
        ("submission_created", "completed"),
        ("review", "pending"),
    ]
    assert timeline.timeline[1].stage_label == "Awaiting review"
    assert timeline.timeline[0].status_label == "Completed"


async def test_get_timeline_unknown_submission(monitor):
    with pytest.raises(NotFoundError):
        await monitor.tracker.get_timeline(uuid.uuid4())


async def test_duplicate_failures_create_one_retry_task(monitor, make_submission, registry, session_factory):
    registry.register("council_delivery", _noop)
    sid = await make_submission()

    await monitor.tracker.track_progress(sid, "council_delivery", "failed", detail="SMTP timeout", occurred_at=T0)
    await monitor.tracker.track_progress(
        sid, "council_delivery", "failed", detail="SMTP timeout", occurred_at=T0 + timedelta(seconds=5)
    )

    async with session_factory() as session:
        tasks = (await session.execute(select(RetryTask).where(RetryTask.submission_id == sid))).scalars().all()
    assert len(tasks) == 1
    assert tasks[0].stage == "council_delivery"
    assert tasks[0].status == "queued"
    assert tasks[0].trigger == "failed_event"


async def test_failure_without_registered_operation_is_not_queued(monitor, make_submission):
    sid = await make_submission()
    await monitor.tracker.track_progress(sid, "review", "failed", occurred_at=T0)
    assert await monitor.orchestrator.list_tasks(submission_id=sid) == []


async def test_list_snapshots_filters(monitor, make_submission):
    project = uuid.uuid4()
    ok = await make_submission(project_id=project, pathway="direct")
    bad = await make_submission(project_id=project, pathway="review")
    other = await make_submission()
    await monitor.tracker.track_progress(ok, "council_delivery", "completed", occurred_at=T0)
    await monitor.tracker.track_progress(bad, "review", "failed", occurred_at=T0 + timedelta(minutes=1))
    await monitor.tracker.track_progress(other, "review", "pending", occurred_at=T0 + timedelta(minutes=2))

    recent = await monitor.tracker.list_snapshots(project_id=project)
    assert [s.submission_id for s in recent] == [bad, ok]

    failed = await monitor.tracker.list_snapshots(failed_only=True)
    assert [s.submission_id for s in failed] == [bad]

    completed = await monitor.tracker.list_snapshots(status="completed")
    assert [s.submission_id for s in completed] == [ok]

    with pytest.raises(ValidationError):
        await monitor.tracker.list_snapshots(limit=101)
