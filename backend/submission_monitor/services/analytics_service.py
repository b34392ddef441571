"""AnalyticsService: dashboard aggregates cached in Redis with a TTL.

Each aggregate is cached independently under a key derived from its filter
parameters. Values are stored as JSON and every read (hit or miss) returns
the decoded JSON, so two reads inside the TTL are identical. The write path
never invalidates; entries age out, or an admin flushes them explicitly.
"""

import json
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import redis.asyncio as redis
import structlog
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.db.base import utcnow
from submission_monitor.db.models.health_check_record import HealthCheckRecord
from submission_monitor.db.models.progress_event import ProgressEvent
from submission_monitor.db.models.submission_snapshot import SubmissionSnapshot
from submission_monitor.db.redis import redis_key
from submission_monitor.domain.errors import normalize_failure_reason
from submission_monitor.domain.stages import ProgressStatus, SubmissionStage
from submission_monitor.schemas.analytics import (
    ErrorAnalysis,
    ErrorGroup,
    IntegrationMetric,
    IntegrationMetrics,
    PathwayBreakdown,
    PathwayShare,
    SubmissionStats,
)
from submission_monitor.schemas.health import ComponentKind, HealthStatus

logger = structlog.get_logger(__name__)

CACHE_NAMESPACE = "analytics"
UNKNOWN_PATHWAY = "unknown"


def _param(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.astimezone(UTC).strftime("%Y%m%dT%H%M%S")
    return str(value)


class AnalyticsService:
    """Computes and caches the four dashboard aggregates."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: redis.Redis,
        ttl_seconds: int = 90,
        error_window_days: int = 30,
        integration_window_hours: int = 168,
    ):
        self.session_factory = session_factory
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.error_window_days = error_window_days
        self.integration_window_hours = integration_window_hours

    def cache_key(self, name: str, *params: object) -> str:
        return redis_key(CACHE_NAMESPACE, name, *(_param(p) for p in params))

    async def _cached(self, key: str, build: Callable[[], Awaitable[BaseModel]]) -> dict[str, Any]:
        """Return the cached JSON payload for ``key``, computing it on a miss.

        Redis errors degrade to an uncached computation.
        """
        try:
            raw = await self.redis.get(key)
        except redis.RedisError as exc:
            logger.warning("analytics_cache_read_failed", key=key, error=str(exc))
            raw = None
        if raw is not None:
            return json.loads(raw)

        payload = (await build()).model_dump_json()
        try:
            await self.redis.setex(key, self.ttl_seconds, payload)
        except redis.RedisError as exc:
            logger.warning("analytics_cache_write_failed", key=key, error=str(exc))
        logger.debug("analytics_cache_miss", key=key)
        return json.loads(payload)

    async def submission_stats(
        self,
        project_id: uuid.UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Submission counts by overall status plus completion time.

        ``start``/``end`` filter on the first recorded event of a submission.
        """
        key = self.cache_key("stats", project_id, start, end)
        return await self._cached(key, lambda: self._compute_stats(project_id, start, end, now or utcnow()))

    async def _compute_stats(
        self,
        project_id: uuid.UUID | None,
        start: datetime | None,
        end: datetime | None,
        now: datetime,
    ) -> SubmissionStats:
        stmt = select(SubmissionSnapshot)
        if project_id is not None:
            stmt = stmt.where(SubmissionSnapshot.project_id == project_id)
        if start is not None:
            stmt = stmt.where(SubmissionSnapshot.first_event_at >= start)
        if end is not None:
            stmt = stmt.where(SubmissionSnapshot.first_event_at <= end)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            snapshots = result.scalars().all()

        today = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        counts = {s.value: 0 for s in ProgressStatus}
        awaiting_review = 0
        submitted_today = 0
        completion_hours = []
        for snap in snapshots:
            counts[snap.status] = counts.get(snap.status, 0) + 1
            if snap.latest_stage == SubmissionStage.REVIEW.value and snap.latest_stage_status in (
                ProgressStatus.PENDING.value,
                ProgressStatus.IN_PROGRESS.value,
            ):
                awaiting_review += 1
            if (snap.submitted_at or snap.first_event_at) >= today:
                submitted_today += 1
            if snap.completed_at is not None:
                started = snap.submitted_at or snap.first_event_at
                completion_hours.append((snap.completed_at - started).total_seconds() / 3600)

        return SubmissionStats(
            total=len(snapshots),
            pending=counts[ProgressStatus.PENDING.value],
            in_progress=counts[ProgressStatus.IN_PROGRESS.value],
            completed=counts[ProgressStatus.COMPLETED.value],
            failed=counts[ProgressStatus.FAILED.value],
            awaiting_review=awaiting_review,
            submitted_today=submitted_today,
            avg_completion_hours=(
                round(sum(completion_hours) / len(completion_hours), 2) if completion_hours else None
            ),
            generated_at=now,
        )

    async def pathway_breakdown(self, project_id: uuid.UUID | None = None) -> dict[str, Any]:
        """Share of submissions per pathway (direct, review, draft, ...)."""
        key = self.cache_key("pathways", project_id)
        return await self._cached(key, lambda: self._compute_pathways(project_id))

    async def _compute_pathways(self, project_id: uuid.UUID | None) -> PathwayBreakdown:
        stmt = select(SubmissionSnapshot.pathway, func.count()).group_by(SubmissionSnapshot.pathway)
        if project_id is not None:
            stmt = stmt.where(SubmissionSnapshot.project_id == project_id)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        merged: dict[str, int] = {}
        for pathway, count in rows:
            name = pathway or UNKNOWN_PATHWAY
            merged[name] = merged.get(name, 0) + count
        total = sum(merged.values())
        shares = [
            PathwayShare(pathway=name, total=count, percentage=round(count * 100 / total, 1))
            for name, count in sorted(merged.items(), key=lambda kv: (-kv[1], kv[0]))
        ]
        return PathwayBreakdown(total=total, pathways=shares, generated_at=utcnow())

    async def error_analysis(self, now: datetime | None = None) -> dict[str, Any]:
        """Failed events in the rolling window grouped by stage and reason."""
        key = self.cache_key("errors", self.error_window_days)
        return await self._cached(key, lambda: self._compute_errors(now or utcnow()))

    async def _compute_errors(self, now: datetime) -> ErrorAnalysis:
        since = now - timedelta(days=self.error_window_days)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProgressEvent.stage, ProgressEvent.detail, ProgressEvent.occurred_at).where(
                    ProgressEvent.status == ProgressStatus.FAILED.value,
                    ProgressEvent.occurred_at >= since,
                )
            )
            rows = result.all()

        groups: dict[tuple[str, str], ErrorGroup] = {}
        for stage, detail, occurred_at in rows:
            reason = normalize_failure_reason(detail)
            group = groups.get((stage, reason))
            if group is None:
                groups[(stage, reason)] = ErrorGroup(
                    stage=stage,
                    reason=reason,
                    occurrences=1,
                    last_occurrence=occurred_at,
                    sample_error=detail,
                )
                continue
            group.occurrences += 1
            if occurred_at > group.last_occurrence:
                group.last_occurrence = occurred_at
                group.sample_error = detail

        ranked = sorted(groups.values(), key=lambda g: (-g.occurrences, -g.last_occurrence.timestamp()))
        return ErrorAnalysis(
            window_days=self.error_window_days,
            total_failures=len(rows),
            groups=ranked,
            generated_at=now,
        )

    async def integration_metrics(self, now: datetime | None = None) -> dict[str, Any]:
        """Success rate and latency per integration over the rolling window."""
        key = self.cache_key("integrations", self.integration_window_hours)
        return await self._cached(key, lambda: self._compute_integrations(now or utcnow()))

    async def _compute_integrations(self, now: datetime) -> IntegrationMetrics:
        since = now - timedelta(hours=self.integration_window_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                select(HealthCheckRecord)
                .where(
                    HealthCheckRecord.kind == ComponentKind.INTEGRATION.value,
                    HealthCheckRecord.checked_at >= since,
                )
                .order_by(HealthCheckRecord.checked_at)
            )
            records = result.scalars().all()

        by_component: dict[str, list[HealthCheckRecord]] = {}
        for record in records:
            by_component.setdefault(record.component, []).append(record)

        metrics = []
        for component, checks in sorted(by_component.items()):
            latest = checks[-1]
            statuses = [c.status for c in checks]
            latencies = [c.latency_ms for c in checks if c.latency_ms is not None]
            success = statuses.count(HealthStatus.HEALTHY.value)
            metrics.append(
                IntegrationMetric(
                    component=component,
                    latest_status=latest.status,
                    checks=len(checks),
                    success_count=success,
                    degraded_count=statuses.count(HealthStatus.DEGRADED.value),
                    failure_count=statuses.count(HealthStatus.UNHEALTHY.value),
                    success_rate=round(success * 100 / len(checks), 1),
                    avg_latency_ms=round(sum(latencies) / len(latencies), 1) if latencies else None,
                    last_checked=latest.checked_at,
                )
            )
        return IntegrationMetrics(
            window_hours=self.integration_window_hours,
            integrations=metrics,
            generated_at=now,
        )

    async def invalidate(self, prefix: str | None = None) -> int:
        """Delete cached aggregates, optionally only those under ``prefix``.

        Admin action only; returns the number of keys removed.
        """
        pattern = redis_key(CACHE_NAMESPACE, f"{prefix}*" if prefix else "*")
        keys = [key async for key in self.redis.scan_iter(match=pattern)]
        if keys:
            await self.redis.delete(*keys)
        logger.info("analytics_cache_invalidated", prefix=prefix, keys=len(keys))
        return len(keys)

    async def warm(self) -> None:
        """Precompute the unfiltered aggregates (scheduler cache warming)."""
        await self.submission_stats()
        await self.pathway_breakdown()
        await self.error_analysis()
        await self.integration_metrics()
