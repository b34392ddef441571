"""Health probes for the store, the cache, the event write path and HTTP dependencies.

Probes never raise: a failing dependency becomes an ``unhealthy`` ProbeResult
carrying the DependencyError message.
"""

import time
from typing import Protocol

import httpx
import redis.asyncio as redis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.core.exceptions import DependencyError
from submission_monitor.db.base import utcnow
from submission_monitor.schemas.health import ComponentKind, HealthStatus, ProbeResult
from submission_monitor.services.stage_tracker import StageTracker

logger = structlog.get_logger(__name__)


def classify(
    latency_ms: float,
    threshold_ms: int,
    http_status: int | None = None,
    failed: bool = False,
) -> HealthStatus:
    """Map a probe outcome to a health status.

    Exceptions, timeouts and 5xx are unhealthy; 4xx (including 429) or a slow
    success are degraded.
    """
    if failed:
        return HealthStatus.UNHEALTHY
    if http_status is not None:
        if http_status >= 500:
            return HealthStatus.UNHEALTHY
        if http_status >= 400:
            return HealthStatus.DEGRADED
    if latency_ms > threshold_ms:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class Probe(Protocol):
    component: str
    kind: ComponentKind

    async def check(self, threshold_ms: int) -> ProbeResult: ...


def failure_result(component: str, kind: ComponentKind, error: Exception, latency_ms: float | None) -> ProbeResult:
    dep = error if isinstance(error, DependencyError) else DependencyError(component, str(error) or type(error).__name__)
    return ProbeResult(
        component=component,
        kind=kind,
        status=HealthStatus.UNHEALTHY,
        detail=str(dep),
        details={"error_type": type(error).__name__},
        latency_ms=int(latency_ms) if latency_ms is not None else None,
        checked_at=utcnow(),
    )


class DatabaseProbe:
    component = "database"
    kind = ComponentKind.SYSTEM

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def check(self, threshold_ms: int) -> ProbeResult:
        start = time.perf_counter()
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            return failure_result(self.component, self.kind, exc, (time.perf_counter() - start) * 1000)
        latency = (time.perf_counter() - start) * 1000
        return ProbeResult(
            component=self.component,
            kind=self.kind,
            status=classify(latency, threshold_ms),
            latency_ms=int(latency),
            checked_at=utcnow(),
        )


class RedisProbe:
    component = "redis"
    kind = ComponentKind.SYSTEM

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    async def check(self, threshold_ms: int) -> ProbeResult:
        start = time.perf_counter()
        try:
            await self.redis.ping()
        except Exception as exc:
            return failure_result(self.component, self.kind, exc, (time.perf_counter() - start) * 1000)
        latency = (time.perf_counter() - start) * 1000
        return ProbeResult(
            component=self.component,
            kind=self.kind,
            status=classify(latency, threshold_ms),
            latency_ms=int(latency),
            checked_at=utcnow(),
        )


class EventStoreProbe:
    """Degraded when the tracker failed to persist events since the last check."""

    component = "event_store"
    kind = ComponentKind.SYSTEM

    def __init__(self, tracker: StageTracker):
        self.tracker = tracker
        self._seen_failures = tracker.write_failures

    async def check(self, threshold_ms: int) -> ProbeResult:
        failures = self.tracker.write_failures
        new_failures = failures - self._seen_failures
        self._seen_failures = failures
        if new_failures > 0:
            return ProbeResult(
                component=self.component,
                kind=self.kind,
                status=HealthStatus.DEGRADED,
                detail=f"{new_failures} progress event write(s) failed since last check",
                details={"new_failures": new_failures, "last_error": self.tracker.last_write_error},
                checked_at=utcnow(),
            )
        return ProbeResult(
            component=self.component,
            kind=self.kind,
            status=HealthStatus.HEALTHY,
            details={"total_failures": failures},
            checked_at=utcnow(),
        )


class HttpProbe:
    """GET a status URL of an integration or AI provider."""

    def __init__(
        self,
        component: str,
        url: str,
        kind: ComponentKind,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.component = component
        self.url = url
        self.kind = kind
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def check(self, threshold_ms: int) -> ProbeResult:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.get(self.url)
        except httpx.HTTPError as exc:
            return failure_result(self.component, self.kind, exc, (time.perf_counter() - start) * 1000)
        latency = (time.perf_counter() - start) * 1000
        status = classify(latency, threshold_ms, http_status=response.status_code)
        return ProbeResult(
            component=self.component,
            kind=self.kind,
            status=status,
            detail=None if status == HealthStatus.HEALTHY else f"HTTP {response.status_code}",
            details={"http_status": response.status_code},
            latency_ms=int(latency),
            checked_at=utcnow(),
        )
