"""Admin API routes: analytics aggregates, retry management and timelines."""

import uuid

from fastapi import APIRouter, Depends, Query

from submission_monitor.api.deps import get_engine
from submission_monitor.core.auth import AdminUser, require_admin
from submission_monitor.schemas.monitoring import RetryStatistics, RetryTaskView
from submission_monitor.schemas.progress import SubmissionTimeline
from submission_monitor.services.engine import MonitoringEngine

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------- Analytics ----------


@router.get("/analytics/stats")
async def analytics_stats(
    project_id: uuid.UUID | None = Query(None, alias="projectId"),
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    return await engine.analytics.submission_stats(project_id=project_id)


@router.get("/analytics/pathways")
async def analytics_pathways(
    project_id: uuid.UUID | None = Query(None, alias="projectId"),
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    return await engine.analytics.pathway_breakdown(project_id=project_id)


@router.get("/analytics/errors")
async def analytics_errors(
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    return await engine.analytics.error_analysis()


@router.get("/analytics/integrations")
async def analytics_integrations(
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    return await engine.analytics.integration_metrics()


@router.post("/analytics/invalidate")
async def invalidate_analytics(
    prefix: str | None = None,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    """Flush cached aggregates, e.g. ``?prefix=stats``."""
    removed = await engine.analytics.invalidate(prefix)
    return {"invalidated": removed}


# ---------- Retries ----------


@router.get("/retry/statistics", response_model=RetryStatistics)
async def retry_statistics(
    hours: int = Query(24, ge=1, le=168),
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> RetryStatistics:
    return await engine.orchestrator.statistics(hours=hours)


@router.get("/retry/tasks", response_model=list[RetryTaskView])
async def list_retry_tasks(
    status: str | None = None,
    submission_id: uuid.UUID | None = Query(None, alias="submissionId"),
    limit: int = Query(50, ge=1, le=200),
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> list[RetryTaskView]:
    return await engine.orchestrator.list_tasks(status=status, submission_id=submission_id, limit=limit)


@router.post("/retry/{task_id}", response_model=RetryTaskView)
async def requeue_retry_task(
    task_id: uuid.UUID,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> RetryTaskView:
    """Give an exhausted retry task a fresh attempt budget."""
    return await engine.orchestrator.requeue(task_id)


# ---------- Submissions ----------


@router.get("/submissions/{submission_id}/timeline", response_model=SubmissionTimeline)
async def admin_submission_timeline(
    submission_id: uuid.UUID,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> SubmissionTimeline:
    """Full timeline including event metadata."""
    return await engine.tracker.get_timeline(submission_id)


@router.post("/submissions/{submission_id}/rebuild")
async def rebuild_submission_snapshot(
    submission_id: uuid.UUID,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
):
    """Re-derive the snapshot row from the event log."""
    snapshot = await engine.tracker.rebuild_snapshot(submission_id)
    return {"snapshot": snapshot.model_dump(mode="json") if snapshot else None}
