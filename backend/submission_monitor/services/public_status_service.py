"""PublicStatusService: the submitter-facing status page.

Serves the current status and timeline of one submission without internal
metadata. Every successful read refreshes a last-known-good copy in Redis;
when the relational store is unavailable that copy is served instead, marked
``stale``, so the public page never fails because of a monitoring outage.
"""

import uuid

import redis.asyncio as redis
import structlog
from sqlalchemy.exc import SQLAlchemyError

from submission_monitor.db.redis import redis_key
from submission_monitor.domain.stages import ProgressStatus, SubmissionStage, stage_label, status_label
from submission_monitor.schemas.progress import PublicSubmissionStatus
from submission_monitor.services.stage_tracker import StageTracker

logger = structlog.get_logger(__name__)

UNKNOWN_STATUS = "unknown"


class PublicStatusService:
    def __init__(self, tracker: StageTracker, redis_client: redis.Redis, fallback_ttl_seconds: int = 86_400):
        self.tracker = tracker
        self.redis = redis_client
        self.fallback_ttl_seconds = fallback_ttl_seconds

    @staticmethod
    def fallback_key(submission_id: uuid.UUID) -> str:
        return redis_key("public_status", submission_id)

    async def get_status(self, submission_id: uuid.UUID) -> PublicSubmissionStatus:
        """Current status plus ordered timeline.

        Raises:
            NotFoundError: Unknown submission (only when the store answered)
        """
        try:
            payload = await self._build(submission_id)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("public_status_store_unavailable", submission_id=str(submission_id), error=str(exc))
            return await self._fallback(submission_id)

        try:
            await self.redis.setex(
                self.fallback_key(submission_id),
                self.fallback_ttl_seconds,
                payload.model_dump_json(),
            )
        except redis.RedisError as exc:
            logger.warning("public_status_fallback_write_failed", submission_id=str(submission_id), error=str(exc))
        return payload

    async def _build(self, submission_id: uuid.UUID) -> PublicSubmissionStatus:
        timeline = await self.tracker.get_timeline(submission_id)
        snapshot = await self.tracker.get_snapshot(submission_id)

        entries = [entry.model_copy(update={"metadata": None}) for entry in timeline.timeline]
        if snapshot is None:
            return PublicSubmissionStatus(
                submission_id=submission_id,
                status=ProgressStatus.PENDING.value,
                status_label=status_label(ProgressStatus.PENDING.value),
                timeline=entries,
            )

        action_required = snapshot.latest_stage == SubmissionStage.REVIEW.value and snapshot.latest_stage_status in (
            ProgressStatus.PENDING.value,
            ProgressStatus.IN_PROGRESS.value,
        )
        return PublicSubmissionStatus(
            submission_id=submission_id,
            status=snapshot.status,
            status_label=status_label(snapshot.status),
            latest_stage=snapshot.latest_stage,
            latest_stage_label=stage_label(snapshot.latest_stage),
            last_event_at=snapshot.last_event_at,
            action_required=action_required,
            timeline=entries,
        )

    async def _fallback(self, submission_id: uuid.UUID) -> PublicSubmissionStatus:
        try:
            raw = await self.redis.get(self.fallback_key(submission_id))
        except redis.RedisError as exc:
            logger.warning("public_status_fallback_read_failed", submission_id=str(submission_id), error=str(exc))
            raw = None

        if raw is not None:
            cached = PublicSubmissionStatus.model_validate_json(raw)
            return cached.model_copy(update={"stale": True})

        return PublicSubmissionStatus(
            submission_id=submission_id,
            status=UNKNOWN_STATUS,
            status_label="Status temporarily unavailable",
            timeline=[],
            stale=True,
        )
