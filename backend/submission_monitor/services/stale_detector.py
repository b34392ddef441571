"""StaleDetector: finds submissions that stopped moving mid-pipeline.

A submission is stale when its overall status is still active and its latest
event is older than the inactivity threshold configured for its latest stage.
The sweep reads the snapshot read model only and never writes events.
"""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.db.base import utcnow
from submission_monitor.db.models.submission_snapshot import SubmissionSnapshot
from submission_monitor.domain.retry import RetryTrigger
from submission_monitor.domain.stages import ACTIVE_STATUSES, stale_threshold_for
from submission_monitor.schemas.monitoring import StaleCandidate
from submission_monitor.services.retry_orchestrator import RetryOrchestrator

logger = structlog.get_logger(__name__)


class StaleDetector:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        thresholds_minutes: dict[str, int],
        default_threshold_minutes: int = 120,
        orchestrator: RetryOrchestrator | None = None,
        auto_retry: bool = True,
    ):
        self.session_factory = session_factory
        self.thresholds_minutes = dict(thresholds_minutes)
        self.default_threshold_minutes = default_threshold_minutes
        self.orchestrator = orchestrator
        self.auto_retry = auto_retry

    def threshold_for(self, stage: str | None) -> int:
        return stale_threshold_for(stage, self.thresholds_minutes, self.default_threshold_minutes)

    async def find_stale(self, now: datetime | None = None, project_id: uuid.UUID | None = None) -> list[StaleCandidate]:
        """Stale candidates ordered by longest inactivity first."""
        now = now or utcnow()
        # The smallest threshold bounds the scan; per-stage thresholds are applied below
        min_threshold = min([self.default_threshold_minutes, *self.thresholds_minutes.values()])
        stmt = select(SubmissionSnapshot).where(
            SubmissionSnapshot.status.in_(ACTIVE_STATUSES),
            SubmissionSnapshot.last_event_at < now - timedelta(minutes=min_threshold),
        )
        if project_id is not None:
            stmt = stmt.where(SubmissionSnapshot.project_id == project_id)
        stmt = stmt.order_by(SubmissionSnapshot.last_event_at)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            snapshots = result.scalars().all()

        candidates = []
        for snap in snapshots:
            minutes_inactive = (now - snap.last_event_at).total_seconds() / 60
            threshold = self.threshold_for(snap.latest_stage)
            if minutes_inactive <= threshold:
                continue
            candidates.append(
                StaleCandidate(
                    submission_id=snap.submission_id,
                    project_id=snap.project_id,
                    status=snap.status,
                    latest_stage=snap.latest_stage,
                    latest_stage_status=snap.latest_stage_status,
                    last_event_at=snap.last_event_at,
                    minutes_inactive=round(minutes_inactive, 1),
                    threshold_minutes=threshold,
                )
            )
        return candidates

    async def sweep(self, now: datetime | None = None) -> list[StaleCandidate]:
        """Detect stale submissions and feed them to the retry intake.

        Only stages with a registered retry operation are enqueued; the rest
        are surfaced on the admin overview for manual follow-up. A candidate
        that cannot be enqueued is logged and the sweep moves on.
        """
        candidates = await self.find_stale(now)
        enqueued = 0
        failed = 0
        if self.auto_retry and self.orchestrator is not None:
            for candidate in candidates:
                if not self.orchestrator.has_operation(candidate.latest_stage):
                    continue
                try:
                    await self.orchestrator.enqueue(
                        candidate.submission_id,
                        candidate.latest_stage,
                        trigger=RetryTrigger.STALE,
                        reason=(
                            f"No progress for {candidate.minutes_inactive:.0f} minutes "
                            f"(threshold {candidate.threshold_minutes})"
                        ),
                        now=now,
                    )
                except Exception as exc:
                    failed += 1
                    logger.error(
                        "stale_enqueue_failed",
                        submission_id=str(candidate.submission_id),
                        stage=candidate.latest_stage,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    continue
                enqueued += 1

        logger.info("stale_sweep_completed", stale=len(candidates), enqueued=enqueued, failed=failed)
        return candidates
