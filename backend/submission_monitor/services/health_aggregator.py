"""HealthAggregator: runs probes and stores their results as a time series.

Current health is the latest record per component; overall status is the
worst of those. The latest result per component is also kept in memory
and served when the store cannot be read. Probes are not retried inline;
the next scheduled run is the retry.
"""

import asyncio
import time
import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.core.exceptions import ValidationError
from submission_monitor.db.base import utcnow
from submission_monitor.db.models.health_check_record import HealthCheckRecord
from submission_monitor.metrics.cloudwatch import emit_probe_latency
from submission_monitor.schemas.health import (
    STATUS_SEVERITY,
    ComponentKind,
    HealthCheckView,
    HealthSnapshot,
    HealthStatus,
    ProbeResult,
)
from submission_monitor.services.probes import Probe, failure_result

logger = structlog.get_logger(__name__)

MAX_HISTORY_LIMIT = 500


def worst_status(statuses: list[str]) -> str:
    if not statuses:
        return HealthStatus.HEALTHY.value
    return max(statuses, key=lambda s: STATUS_SEVERITY.get(s, 2))


def _snapshot(views: list[HealthCheckView]) -> HealthSnapshot:
    overall = worst_status([v.status for v in views])
    return HealthSnapshot(
        ok=overall == HealthStatus.HEALTHY.value,
        status=overall,
        components=views,
        checked_at=max((v.checked_at for v in views), default=utcnow()),
    )


class HealthAggregator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        probes: list[Probe],
        latency_threshold_ms: int = 1000,
        timeout_seconds: float = 5.0,
        history_default_hours: int = 24,
    ):
        self.session_factory = session_factory
        self.probes = list(probes)
        self.latency_threshold_ms = latency_threshold_ms
        self.timeout_seconds = timeout_seconds
        self.history_default_hours = history_default_hours
        # Latest result per component from this process, served when the store is down
        self._latest: dict[str, HealthCheckView] = {}

    async def _run_probe(self, probe: Probe) -> ProbeResult:
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(probe.check(self.latency_threshold_ms), timeout=self.timeout_seconds)
        except TimeoutError:
            return failure_result(
                probe.component,
                probe.kind,
                TimeoutError(f"probe timed out after {self.timeout_seconds}s"),
                (time.perf_counter() - start) * 1000,
            )
        except Exception as exc:
            return failure_result(probe.component, probe.kind, exc, (time.perf_counter() - start) * 1000)

    async def run_probes(self) -> list[HealthCheckView]:
        """Run every probe concurrently and append one record per probe.

        Results are kept in memory before they are written, so a store outage
        (which the database probe is reporting in the same tick) still leaves
        them visible through ``current()``.
        """
        results = await asyncio.gather(*(self._run_probe(p) for p in self.probes))

        records = [
            HealthCheckRecord(
                id=uuid.uuid4(),
                component=r.component,
                kind=r.kind.value,
                status=r.status.value,
                detail=r.detail,
                details=r.details,
                latency_ms=r.latency_ms,
                checked_at=r.checked_at,
            )
            for r in results
        ]
        views = [HealthCheckView.model_validate(rec) for rec in records]
        for view in views:
            self._latest[view.component] = view

        try:
            async with self.session_factory() as session:
                session.add_all(records)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "health_records_persist_failed",
                records=len(records),
                error=str(exc),
                error_type=type(exc).__name__,
            )

        for r in results:
            if r.status != HealthStatus.HEALTHY:
                logger.warning(
                    "health_probe_not_healthy",
                    component=r.component,
                    status=r.status.value,
                    detail=r.detail,
                )
            if r.latency_ms is not None:
                await emit_probe_latency(r.component, r.status.value, r.latency_ms)

        logger.info("health_probes_completed", probes=len(records), overall=worst_status([r.status.value for r in results]))
        return views

    async def current(self, kind: ComponentKind | str | None = None) -> HealthSnapshot:
        """Latest record per component, optionally for one component kind.

        Falls back to this process's latest probe results when the store
        cannot be read.
        """
        kind_value = ComponentKind(kind).value if kind is not None else None
        latest = select(
            HealthCheckRecord.component,
            func.max(HealthCheckRecord.checked_at).label("checked_at"),
        )
        if kind_value is not None:
            latest = latest.where(HealthCheckRecord.kind == kind_value)
        latest = latest.group_by(HealthCheckRecord.component).subquery()

        stmt = (
            select(HealthCheckRecord)
            .join(
                latest,
                (HealthCheckRecord.component == latest.c.component)
                & (HealthCheckRecord.checked_at == latest.c.checked_at),
            )
            .order_by(HealthCheckRecord.component)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("health_current_from_memory", error=str(exc), error_type=type(exc).__name__)
            views = [
                view
                for _, view in sorted(self._latest.items())
                if kind_value is None or view.kind == kind_value
            ]
            return _snapshot(views)

        # Keep one row per component if two probes landed on the same timestamp
        components: dict[str, HealthCheckView] = {}
        for row in rows:
            components.setdefault(row.component, HealthCheckView.model_validate(row))
        return _snapshot(list(components.values()))

    async def history(
        self,
        since: datetime | None = None,
        limit: int = 100,
        component: str | None = None,
        kind: ComponentKind | str | None = None,
    ) -> list[HealthCheckView]:
        """Health records newest first, by default from the last 24 hours."""
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        since = since or utcnow() - timedelta(hours=self.history_default_hours)

        stmt = select(HealthCheckRecord).where(HealthCheckRecord.checked_at >= since)
        if component is not None:
            stmt = stmt.where(HealthCheckRecord.component == component)
        if kind is not None:
            stmt = stmt.where(HealthCheckRecord.kind == ComponentKind(kind).value)
        stmt = stmt.order_by(HealthCheckRecord.checked_at.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [HealthCheckView.model_validate(row) for row in result.scalars().all()]
