"""Health endpoints: liveness, readiness, component snapshots and history."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from submission_monitor.api.deps import get_engine
from submission_monitor.core.auth import AdminUser, require_admin
from submission_monitor.db.base import get_session_factory
from submission_monitor.db.redis import get_redis
from submission_monitor.schemas.health import ComponentKind, HealthSnapshot
from submission_monitor.services.engine import MonitoringEngine

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE_NAME = "submission-monitor"


@router.get("/health")
async def health_check(request: Request):
    """Liveness for the load balancer.

    Returns 503 during graceful shutdown so traffic drains.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": SERVICE_NAME},
        )
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check():
    """Readiness: the store and the cache both answer."""
    checks = {"database": False, "redis": False}

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e))

    try:
        await get_redis().ping()
        checks["redis"] = True
    except Exception as e:
        logger.error("readiness_redis_failed", error=str(e))

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )


@router.get("/health/system", response_model=HealthSnapshot)
async def system_health(engine: MonitoringEngine = Depends(get_engine)):
    return await engine.health.current(ComponentKind.SYSTEM)


@router.get("/health/integrations", response_model=HealthSnapshot)
async def integration_health(engine: MonitoringEngine = Depends(get_engine)):
    return await engine.health.current(ComponentKind.INTEGRATION)


@router.get("/health/ai-providers", response_model=HealthSnapshot)
async def ai_provider_health(engine: MonitoringEngine = Depends(get_engine)):
    return await engine.health.current(ComponentKind.AI_PROVIDER)


@router.get("/health/detailed")
async def detailed_health(
    since: datetime | None = None,
    limit: int = Query(100, ge=1, le=500),
    component: str | None = None,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    """Health history plus current snapshot and retry statistics (admin)."""
    history = await engine.health.history(since=since, limit=limit, component=component)
    current = await engine.health.current()
    retry_stats = await engine.orchestrator.statistics(hours=24)
    return {
        "current": current.model_dump(mode="json"),
        "history": [h.model_dump(mode="json") for h in history],
        "retry_statistics": retry_stats.model_dump(mode="json"),
    }
