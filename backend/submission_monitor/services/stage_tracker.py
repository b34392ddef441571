"""StageTracker: records submission progress and maintains the snapshot read model.

Every write appends one ProgressEvent and folds it into the submission's
snapshot row in the same transaction. Recording is best-effort from the
producer's point of view: persistence failures are retried, logged and
counted, but never raised, so a monitoring outage cannot break the
submission workflow itself.
"""

import uuid
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from submission_monitor.core.exceptions import ConflictError, NotFoundError, ValidationError
from submission_monitor.db.base import utcnow
from submission_monitor.db.models.progress_event import ProgressEvent
from submission_monitor.db.models.submission_snapshot import SubmissionSnapshot
from submission_monitor.domain.progress import SnapshotState, derive_snapshot, fold_event
from submission_monitor.domain.retry import RetryTrigger
from submission_monitor.domain.stages import ProgressStatus, parse_stage, parse_status, stage_label, status_label
from submission_monitor.schemas.progress import (
    ProgressEventRecord,
    SubmissionSnapshotView,
    SubmissionTimeline,
    TimelineEntry,
)
from submission_monitor.services.event_store import EventStore, NewEvent
from submission_monitor.services.submission_directory import SubmissionDirectory, SubmissionInfo

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


class RetryIntake(Protocol):
    """The part of the RetryOrchestrator the tracker hands failures to."""

    def has_operation(self, stage: str) -> bool: ...

    async def enqueue(
        self,
        submission_id: uuid.UUID,
        stage: str,
        trigger: RetryTrigger = RetryTrigger.FAILED_EVENT,
        reason: str | None = None,
    ) -> Any: ...


def _state_from_row(row: SubmissionSnapshot) -> SnapshotState:
    return SnapshotState(
        status=row.status,
        latest_stage=row.latest_stage,
        latest_stage_status=row.latest_stage_status,
        last_event_at=row.last_event_at,
        last_event_id=row.last_event_id,
        first_event_at=row.first_event_at,
        completed_at=row.completed_at,
        failed_events=row.failed_events or 0,
        last_failed_at=row.last_failed_at,
    )


def _apply_state(row: SubmissionSnapshot, state: SnapshotState) -> None:
    row.status = state.status
    row.latest_stage = state.latest_stage
    row.latest_stage_status = state.latest_stage_status
    row.last_event_at = state.last_event_at
    row.last_event_id = state.last_event_id
    row.first_event_at = state.first_event_at
    row.completed_at = state.completed_at
    row.failed_events = state.failed_events
    row.last_failed_at = state.last_failed_at
    row.updated_at = utcnow()


class StageTracker:
    """Write path for progress events plus timeline and snapshot reads.

    Uses dependency injection (takes session_factory) for testability.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_store: EventStore,
        directory: SubmissionDirectory,
        terminal_stages: list[str] | tuple[str, ...] = ("council_delivery",),
    ):
        self.session_factory = session_factory
        self.event_store = event_store
        self.directory = directory
        self.terminal_stages = tuple(terminal_stages)
        self.retry_intake: RetryIntake | None = None
        # Read by the event_store health probe
        self.write_failures = 0
        self.last_write_error: str | None = None

    def attach_retry_intake(self, intake: RetryIntake) -> None:
        self.retry_intake = intake

    async def track_progress(
        self,
        submission_id: uuid.UUID,
        stage: str,
        status: str,
        detail: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
        enqueue_retry: bool = True,
    ) -> ProgressEventRecord | None:
        """Record a stage transition for a submission.

        Args:
            submission_id: Submission UUID
            stage: SubmissionStage value
            status: ProgressStatus value
            detail: Optional diagnostic text (error message for failures)
            metadata: Optional structured payload
            occurred_at: When the transition happened (defaults to now)
            enqueue_retry: Hand failed events to the retry intake

        Returns:
            The recorded event, or None when persistence failed.

        Raises:
            ValidationError: Unknown stage or status
            NotFoundError: Unknown submission
            ConflictError: Out-of-order event under strict ordering
        """
        stage_value = parse_stage(stage).value
        status_value = parse_status(status).value
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a JSON object")

        try:
            info = await self.directory.get(submission_id)
        except (SQLAlchemyError, OSError) as exc:
            self._record_write_failure(exc, submission_id, stage_value, status_value)
            return None
        if info is None:
            raise NotFoundError(f"Submission {submission_id} not found")

        event = NewEvent(
            submission_id=submission_id,
            stage=stage_value,
            status=status_value,
            detail=detail,
            metadata=metadata,
            occurred_at=occurred_at or utcnow(),
        )

        try:
            row = await self._persist(event, info)
        except ConflictError:
            raise
        except Exception as exc:
            self._record_write_failure(exc, submission_id, stage_value, status_value)
            return None

        record = ProgressEventRecord.model_validate(row)
        logger.info(
            "progress_event_recorded",
            submission_id=str(submission_id),
            stage=stage_value,
            status=status_value,
            event_id=record.id,
        )

        if status_value == ProgressStatus.FAILED.value and enqueue_retry:
            await self._hand_to_retry(submission_id, stage_value, detail)

        return record

    def _record_write_failure(self, exc: Exception, submission_id: uuid.UUID, stage: str, status: str) -> None:
        self.write_failures += 1
        self.last_write_error = f"{type(exc).__name__}: {exc}"
        logger.error(
            "progress_event_persist_failed",
            submission_id=str(submission_id),
            stage=stage,
            status=status,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    @retry(
        retry=retry_if_exception_type((OperationalError, IntegrityError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "progress_event_persist_retrying",
            attempt=rs.attempt_number,
            error=str(rs.outcome.exception()),
        ),
    )
    async def _persist(self, event: NewEvent, info: SubmissionInfo) -> ProgressEvent:
        """Append the event and fold it into the snapshot in one transaction.

        IntegrityError covers two producers racing to insert the first
        snapshot row; the loser retries and then finds the row.
        """
        async with self.session_factory() as session:
            async with session.begin():
                row = await self.event_store.append(event, session=session)
                await self._upsert_snapshot(session, row, info)
            return row

    async def _upsert_snapshot(self, session: AsyncSession, event: ProgressEvent, info: SubmissionInfo) -> None:
        result = await session.execute(
            select(SubmissionSnapshot)
            .where(SubmissionSnapshot.submission_id == event.submission_id)
            .with_for_update()
        )
        snapshot = result.scalar_one_or_none()

        if snapshot is not None:
            _apply_state(snapshot, fold_event(_state_from_row(snapshot), event, self.terminal_stages))
            return

        # No snapshot yet: derive from the whole log in case earlier events exist
        events = await session.execute(
            select(ProgressEvent).where(ProgressEvent.submission_id == event.submission_id)
        )
        state = derive_snapshot(events.scalars().all(), self.terminal_stages)
        snapshot = SubmissionSnapshot(
            submission_id=event.submission_id,
            project_id=info.project_id,
            pathway=info.pathway,
            submitted_at=info.created_at,
        )
        _apply_state(snapshot, state)
        session.add(snapshot)
        await session.flush()

    async def _hand_to_retry(self, submission_id: uuid.UUID, stage: str, detail: str | None) -> None:
        intake = self.retry_intake
        if intake is None or not intake.has_operation(stage):
            return
        try:
            await intake.enqueue(submission_id, stage, trigger=RetryTrigger.FAILED_EVENT, reason=detail)
        except Exception as exc:
            # The event is already durable; the stale sweep picks the submission up later
            logger.error(
                "retry_intake_failed",
                submission_id=str(submission_id),
                stage=stage,
                error=str(exc),
            )

    async def get_timeline(self, submission_id: uuid.UUID) -> SubmissionTimeline:
        """Ordered events of a submission with human-readable labels.

        Raises:
            NotFoundError: Submission unknown to the directory and the log.
        """
        events = await self.event_store.query_by_submission(submission_id)
        if not events and await self.directory.get(submission_id) is None:
            raise NotFoundError(f"Submission {submission_id} not found")

        return SubmissionTimeline(
            submission_id=submission_id,
            timeline=[
                TimelineEntry(
                    stage=e.stage,
                    stage_label=stage_label(e.stage),
                    status=e.status,
                    status_label=status_label(e.status),
                    detail=e.detail,
                    metadata=e.event_metadata,
                    occurred_at=e.occurred_at,
                )
                for e in events
            ],
        )

    async def get_snapshot(self, submission_id: uuid.UUID) -> SubmissionSnapshotView | None:
        async with self.session_factory() as session:
            row = await session.get(SubmissionSnapshot, submission_id)
            return SubmissionSnapshotView.model_validate(row) if row is not None else None

    async def list_snapshots(
        self,
        status: str | None = None,
        project_id: uuid.UUID | None = None,
        pathway: str | None = None,
        failed_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SubmissionSnapshotView]:
        """Snapshots ordered by most recent activity.

        ``failed_only`` selects submissions whose latest stage failed.
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must be >= 0")

        stmt = select(SubmissionSnapshot)
        if status is not None:
            stmt = stmt.where(SubmissionSnapshot.status == parse_status(status).value)
        if failed_only:
            stmt = stmt.where(SubmissionSnapshot.status == ProgressStatus.FAILED.value)
        if project_id is not None:
            stmt = stmt.where(SubmissionSnapshot.project_id == project_id)
        if pathway is not None:
            stmt = stmt.where(SubmissionSnapshot.pathway == pathway)
        stmt = (
            stmt.order_by(SubmissionSnapshot.last_event_at.desc(), SubmissionSnapshot.submission_id)
            .limit(limit)
            .offset(offset)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [SubmissionSnapshotView.model_validate(row) for row in result.scalars().all()]

    async def rebuild_snapshot(self, submission_id: uuid.UUID) -> SubmissionSnapshotView | None:
        """Re-derive a submission's snapshot from its full event sequence.

        Returns None when the submission has no events.
        """
        info = await self.directory.get(submission_id)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(SubmissionSnapshot)
                    .where(SubmissionSnapshot.submission_id == submission_id)
                    .with_for_update()
                )
                snapshot = result.scalar_one_or_none()
                events = await session.execute(
                    select(ProgressEvent).where(ProgressEvent.submission_id == submission_id)
                )
                state = derive_snapshot(events.scalars().all(), self.terminal_stages)
                if state is None:
                    if snapshot is not None:
                        await session.delete(snapshot)
                    return None

                if snapshot is None:
                    if info is None:
                        raise NotFoundError(f"Submission {submission_id} not found")
                    snapshot = SubmissionSnapshot(
                        submission_id=submission_id,
                        project_id=info.project_id,
                        pathway=info.pathway,
                        submitted_at=info.created_at,
                    )
                    session.add(snapshot)
                _apply_state(snapshot, state)

            logger.info("snapshot_rebuilt", submission_id=str(submission_id), status=state.status)
            return SubmissionSnapshotView.model_validate(snapshot)

