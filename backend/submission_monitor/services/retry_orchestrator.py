"""RetryOrchestrator: single-flight, backed-off retry of failed pipeline stages.

Lifecycle of a RetryTask:
    queued -> in_flight -> succeeded
                        -> queued (backoff)
                        -> exhausted (attempt ceiling reached)

Single-flight per (submission_id, stage) rests on two things: a partial
unique index allowing one queued/in_flight row per pair, and a conditional
UPDATE in claim() that only one caller can win. Retry operations are
registered per stage by the collaborators that own them and only ever redo
that one stage. Each stage has a circuit breaker; while it is open, the
stage's tasks stay queued.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.core.exceptions import ConflictError, MonitoringError, NotFoundError, ValidationError
from submission_monitor.db.base import utcnow
from submission_monitor.db.models.retry_task import RetryTask
from submission_monitor.domain.retry import (
    ACTIVE_TASK_STATUSES,
    CircuitBreaker,
    CircuitState,
    RetryPolicy,
    RetryTaskStatus,
    RetryTrigger,
    can_transition,
)
from submission_monitor.domain.stages import ProgressStatus, parse_stage
from submission_monitor.metrics.cloudwatch import emit_retry_outcome
from submission_monitor.schemas.monitoring import RetryStageStatistics, RetryStatistics, RetryTaskView
from submission_monitor.schemas.progress import ProgressEventRecord, SubmissionSnapshotView
from submission_monitor.services.stage_tracker import StageTracker

logger = structlog.get_logger(__name__)

MAX_STATISTICS_HOURS = 168


@dataclass
class RetryContext:
    """Everything a retry operation needs to resume one stage."""

    task_id: uuid.UUID
    submission_id: uuid.UUID
    stage: str
    attempt: int
    trigger: str
    last_error: str | None = None
    snapshot: SubmissionSnapshotView | None = None
    last_good_event: ProgressEventRecord | None = None


RetryOperation = Callable[[RetryContext], Awaitable[Any]]


class OperationRegistry:
    """Maps a stage to the async callable that retries it."""

    def __init__(self) -> None:
        self._operations: dict[str, RetryOperation] = {}

    def register(self, stage: str, operation: RetryOperation) -> None:
        self._operations[parse_stage(stage).value] = operation
        logger.info("retry_operation_registered", stage=stage)

    def get(self, stage: str) -> RetryOperation | None:
        return self._operations.get(stage)

    def stages(self) -> list[str]:
        return sorted(self._operations)


@dataclass
class RetryRunSummary:
    reclaimed: int = 0
    attempted: int = 0
    succeeded: int = 0
    requeued: int = 0
    exhausted: int = 0
    skipped: int = 0
    deferred: int = 0
    errored: int = 0
    task_ids: list[uuid.UUID] = field(default_factory=list)


class RetryOrchestrator:
    """Queue and drive retry tasks.

    Uses dependency injection (session factory, tracker, registry) for testability.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: StageTracker,
        registry: OperationRegistry,
        policy: RetryPolicy | None = None,
        lease_seconds: int = 300,
        operation_timeout_seconds: float = 120,
        batch_size: int = 20,
        breaker_factory: Callable[[], CircuitBreaker] = CircuitBreaker,
    ):
        self.session_factory = session_factory
        self.tracker = tracker
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.lease_seconds = lease_seconds
        self.operation_timeout_seconds = operation_timeout_seconds
        self.batch_size = batch_size
        self.breaker_factory = breaker_factory
        # One breaker per stage, held in process memory
        self.breakers: dict[str, CircuitBreaker] = {}

    def has_operation(self, stage: str) -> bool:
        return self.registry.get(stage) is not None

    async def enqueue(
        self,
        submission_id: uuid.UUID,
        stage: str,
        trigger: RetryTrigger = RetryTrigger.FAILED_EVENT,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> RetryTaskView:
        """Create a queued task unless one is already active for the pair.

        Returns the new task or the existing queued/in_flight one.
        """
        now = now or utcnow()
        stage = parse_stage(stage).value

        existing = await self._active_task(submission_id, stage)
        if existing is not None:
            logger.info(
                "retry_task_deduplicated",
                submission_id=str(submission_id),
                stage=stage,
                task_id=str(existing.id),
                trigger=RetryTrigger(trigger).value,
            )
            return existing

        task = RetryTask(
            submission_id=submission_id,
            stage=stage,
            trigger=RetryTrigger(trigger).value,
            max_attempts=self.policy.max_attempts,
            next_eligible_at=now,
            last_error=reason,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session_factory() as session:
                session.add(task)
                await session.commit()
        except IntegrityError:
            # Lost the insert race to a concurrent enqueue for the same pair
            existing = await self._active_task(submission_id, stage)
            if existing is None:
                raise
            return existing

        logger.info(
            "retry_task_enqueued",
            submission_id=str(submission_id),
            stage=stage,
            task_id=str(task.id),
            trigger=task.trigger,
        )
        return RetryTaskView.model_validate(task)

    async def _active_task(self, submission_id: uuid.UUID, stage: str) -> RetryTaskView | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RetryTask).where(
                    RetryTask.submission_id == submission_id,
                    RetryTask.stage == stage,
                    RetryTask.status.in_(ACTIVE_TASK_STATUSES),
                )
            )
            row = result.scalar_one_or_none()
            return RetryTaskView.model_validate(row) if row is not None else None

    async def claim(self, task_id: uuid.UUID, now: datetime | None = None) -> bool:
        """Move an eligible queued task to in_flight and take its lease.

        Exactly one of any number of concurrent callers gets True.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(RetryTask)
                .where(
                    RetryTask.id == task_id,
                    RetryTask.status == RetryTaskStatus.QUEUED.value,
                    RetryTask.next_eligible_at <= now,
                )
                .values(
                    status=RetryTaskStatus.IN_FLIGHT.value,
                    last_attempt_at=now,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def reclaim_expired_leases(self, now: datetime | None = None) -> int:
        """Return in_flight tasks whose lease ran out to queued.

        A worker that died mid-attempt leaves its task in_flight; the attempt
        is not counted.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(RetryTask)
                .where(
                    RetryTask.status == RetryTaskStatus.IN_FLIGHT.value,
                    RetryTask.lease_expires_at < now,
                )
                .values(status=RetryTaskStatus.QUEUED.value, lease_expires_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("retry_leases_reclaimed", count=result.rowcount)
        return result.rowcount

    async def eligible_tasks(self, now: datetime | None = None) -> list[tuple[uuid.UUID, str]]:
        """(task id, stage) of queued tasks whose backoff has elapsed, oldest eligibility first."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(RetryTask.id, RetryTask.stage)
                .where(
                    RetryTask.status == RetryTaskStatus.QUEUED.value,
                    RetryTask.next_eligible_at <= now,
                )
                .order_by(RetryTask.next_eligible_at, RetryTask.created_at)
                .limit(self.batch_size)
            )
            return [(task_id, stage) for task_id, stage in result.all()]

    def breaker(self, stage: str) -> CircuitBreaker:
        if stage not in self.breakers:
            self.breakers[stage] = self.breaker_factory()
        return self.breakers[stage]

    async def run_once(self, now: datetime | None = None) -> RetryRunSummary:
        """Reclaim expired leases, then claim and run every eligible task.

        Tasks of a stage whose circuit is open stay queued. An error while
        running one task is logged and the rest of the batch still runs.
        """
        now = now or utcnow()
        summary = RetryRunSummary()
        summary.reclaimed = await self.reclaim_expired_leases(now)

        for task_id, stage in await self.eligible_tasks(now):
            if not self.breaker(stage).allow(now):
                summary.deferred += 1
                continue
            if not await self.claim(task_id, now):
                # Another worker got there first
                summary.skipped += 1
                continue
            try:
                outcome = await self._execute(task_id, now)
            except Exception as exc:
                # Left in_flight; the lease brings it back
                summary.errored += 1
                logger.error(
                    "retry_attempt_errored",
                    task_id=str(task_id),
                    stage=stage,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            summary.attempted += 1
            summary.task_ids.append(task_id)
            if outcome == RetryTaskStatus.SUCCEEDED:
                summary.succeeded += 1
            elif outcome == RetryTaskStatus.EXHAUSTED:
                summary.exhausted += 1
            else:
                summary.requeued += 1

        if summary.attempted or summary.reclaimed or summary.deferred or summary.errored:
            logger.info(
                "retry_run_completed",
                reclaimed=summary.reclaimed,
                attempted=summary.attempted,
                succeeded=summary.succeeded,
                requeued=summary.requeued,
                exhausted=summary.exhausted,
                deferred=summary.deferred,
                errored=summary.errored,
            )
        return summary

    async def _load(self, task_id: uuid.UUID) -> RetryTask | None:
        async with self.session_factory() as session:
            return await session.get(RetryTask, task_id)

    async def _build_context(self, task: RetryTask) -> RetryContext:
        last_good = await self.tracker.event_store.last_good_event(task.submission_id, exclude_stage=task.stage)
        return RetryContext(
            task_id=task.id,
            submission_id=task.submission_id,
            stage=task.stage,
            attempt=task.attempt_count + 1,
            trigger=task.trigger,
            last_error=task.last_error,
            snapshot=await self.tracker.get_snapshot(task.submission_id),
            last_good_event=ProgressEventRecord.model_validate(last_good) if last_good is not None else None,
        )

    async def _execute(self, task_id: uuid.UUID, now: datetime) -> RetryTaskStatus:
        """Invoke the stage operation for a claimed task and settle the outcome."""
        task = await self._load(task_id)
        if task is None:
            raise NotFoundError(f"Retry task {task_id} not found")
        ctx = await self._build_context(task)
        log = logger.bind(
            task_id=str(task.id),
            submission_id=str(task.submission_id),
            stage=task.stage,
            attempt=ctx.attempt,
        )

        operation = self.registry.get(task.stage)
        breaker = self.breaker(task.stage)
        try:
            if operation is None:
                raise LookupError(f"No retry operation registered for stage {task.stage}")
            await asyncio.wait_for(operation(ctx), timeout=self.operation_timeout_seconds)
        except asyncio.CancelledError:
            await self._release(task.id)
            log.warning("retry_attempt_cancelled")
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            log.warning("retry_attempt_failed", error=error, error_type=type(exc).__name__)
            if operation is not None:
                breaker.record_failure(now)
                if breaker.state == CircuitState.OPEN:
                    log.warning("retry_circuit_open", opened_until=breaker.opened_until.isoformat())
            return await self._settle_failure(task, ctx.attempt, error, now)

        breaker.record_success(now)
        log.info("retry_attempt_succeeded")
        return await self._settle_success(task, ctx.attempt, now)

    async def _record_outcome(self, task: RetryTask, status: str, detail: str, metadata: dict[str, Any]) -> None:
        """Record the attempt's event; the task is settled whether or not this succeeds."""
        try:
            await self.tracker.track_progress(
                task.submission_id,
                task.stage,
                status,
                detail=detail,
                metadata=metadata,
                enqueue_retry=False,
            )
        except MonitoringError as exc:
            logger.warning(
                "retry_outcome_not_recorded",
                task_id=str(task.id),
                submission_id=str(task.submission_id),
                stage=task.stage,
                status=status,
                error=str(exc),
            )

    async def _settle_success(self, task: RetryTask, attempt: int, now: datetime) -> RetryTaskStatus:
        # Record while still in_flight so the failed-event intake sees an active task
        await self._record_outcome(
            task,
            ProgressStatus.COMPLETED.value,
            "Completed by automatic retry",
            {"retry_task_id": str(task.id), "attempt": attempt},
        )
        await self._transition(
            task.id,
            RetryTaskStatus.SUCCEEDED,
            attempt_count=attempt,
            lease_expires_at=None,
            updated_at=now,
        )
        await emit_retry_outcome(task.stage, RetryTaskStatus.SUCCEEDED.value)
        return RetryTaskStatus.SUCCEEDED

    async def _settle_failure(self, task: RetryTask, attempt: int, error: str, now: datetime) -> RetryTaskStatus:
        exhausted = self.policy.is_exhausted(attempt, task.max_attempts)
        await self._record_outcome(
            task,
            ProgressStatus.FAILED.value,
            error,
            {
                "retry_task_id": str(task.id),
                "attempt": attempt,
                "max_attempts": task.max_attempts,
                "exhausted": exhausted,
            },
        )

        if exhausted:
            target = RetryTaskStatus.EXHAUSTED
            values: dict[str, Any] = {}
            logger.error(
                "retry_task_exhausted",
                task_id=str(task.id),
                submission_id=str(task.submission_id),
                stage=task.stage,
                attempts=attempt,
            )
        else:
            target = RetryTaskStatus.QUEUED
            values = {"next_eligible_at": self.policy.next_eligible_at(now, attempt)}

        await self._transition(
            task.id,
            target,
            attempt_count=attempt,
            last_error=error,
            lease_expires_at=None,
            updated_at=now,
            **values,
        )
        await emit_retry_outcome(task.stage, target.value)
        return target

    async def _release(self, task_id: uuid.UUID) -> None:
        """Put a cancelled in_flight task back in the queue without counting the attempt."""
        await self._transition(task_id, RetryTaskStatus.QUEUED, lease_expires_at=None, updated_at=utcnow())

    async def _transition(self, task_id: uuid.UUID, target: RetryTaskStatus, **values: Any) -> bool:
        if not can_transition(RetryTaskStatus.IN_FLIGHT, target):
            raise ValueError(f"Invalid retry transition in_flight -> {target.value}")
        async with self.session_factory() as session:
            result = await session.execute(
                update(RetryTask)
                .where(RetryTask.id == task_id, RetryTask.status == RetryTaskStatus.IN_FLIGHT.value)
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            # Lease expired and another worker reclaimed the task
            logger.warning("retry_task_transition_lost", task_id=str(task_id), target=target.value)
            return False
        return True

    async def requeue(self, task_id: uuid.UUID, now: datetime | None = None) -> RetryTaskView:
        """Give an exhausted task a fresh attempt budget (admin action).

        Raises:
            NotFoundError: Unknown task
            ConflictError: Task is not exhausted, or another task is active for the pair
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            task = await session.get(RetryTask, task_id)
            if task is None:
                raise NotFoundError(f"Retry task {task_id} not found")
            if task.status != RetryTaskStatus.EXHAUSTED.value:
                raise ConflictError(f"Retry task {task_id} is {task.status}, only exhausted tasks can be requeued")

            active = await session.execute(
                select(RetryTask.id).where(
                    RetryTask.submission_id == task.submission_id,
                    RetryTask.stage == task.stage,
                    RetryTask.status.in_(ACTIVE_TASK_STATUSES),
                )
            )
            if active.first() is not None:
                raise ConflictError(f"Another retry is already active for {task.submission_id}/{task.stage}")

            task.status = RetryTaskStatus.QUEUED.value
            task.trigger = RetryTrigger.MANUAL.value
            task.attempt_count = 0
            task.max_attempts = self.policy.max_attempts
            task.next_eligible_at = now
            task.lease_expires_at = None
            task.updated_at = now
            try:
                await session.commit()
            except IntegrityError:
                raise ConflictError(
                    f"Another retry is already active for {task.submission_id}/{task.stage}"
                ) from None

        logger.info("retry_task_requeued", task_id=str(task_id), submission_id=str(task.submission_id))
        return RetryTaskView.model_validate(task)

    async def get_task(self, task_id: uuid.UUID) -> RetryTaskView:
        task = await self._load(task_id)
        if task is None:
            raise NotFoundError(f"Retry task {task_id} not found")
        return RetryTaskView.model_validate(task)

    async def list_tasks(
        self,
        status: str | None = None,
        submission_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[RetryTaskView]:
        stmt = select(RetryTask)
        if status is not None:
            try:
                stmt = stmt.where(RetryTask.status == RetryTaskStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown retry task status: {status!r}") from None
        if submission_id is not None:
            stmt = stmt.where(RetryTask.submission_id == submission_id)
        stmt = stmt.order_by(RetryTask.updated_at.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [RetryTaskView.model_validate(row) for row in result.scalars().all()]

    async def statistics(self, hours: int = 24, now: datetime | None = None) -> RetryStatistics:
        """Per-stage task counts by status over tasks touched in the window."""
        if hours < 1 or hours > MAX_STATISTICS_HOURS:
            raise ValidationError(f"hours must be between 1 and {MAX_STATISTICS_HOURS}")
        now = now or utcnow()
        since = now - timedelta(hours=hours)

        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    RetryTask.stage,
                    RetryTask.status,
                    func.count(RetryTask.id),
                    func.sum(RetryTask.attempt_count),
                )
                .where(RetryTask.updated_at >= since)
                .group_by(RetryTask.stage, RetryTask.status)
            )
            rows = result.all()

        stages: dict[str, RetryStageStatistics] = {}
        attempts: dict[str, int] = {}
        for stage, status, count, attempt_sum in rows:
            entry = stages.setdefault(stage, RetryStageStatistics(stage=stage))
            entry.total += count
            setattr(entry, status, getattr(entry, status) + count)
            attempts[stage] = attempts.get(stage, 0) + int(attempt_sum or 0)

        for stage, entry in stages.items():
            entry.avg_attempts = round(attempts[stage] / entry.total, 2) if entry.total else 0.0

        ordered = sorted(stages.values(), key=lambda s: s.total, reverse=True)
        return RetryStatistics(
            window_hours=hours,
            total=sum(s.total for s in ordered),
            succeeded=sum(s.succeeded for s in ordered),
            exhausted=sum(s.exhausted for s in ordered),
            stages=ordered,
            circuits={stage: breaker.state.value for stage, breaker in sorted(self.breakers.items())},
        )
