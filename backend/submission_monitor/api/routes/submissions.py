"""Submission monitoring endpoints.

Admin:
    GET /api/submissions/overview   - stats, stale submissions, exhausted retries
    GET /api/submissions/recent     - latest activity first
    GET /api/submissions/failed     - submissions whose latest stage failed
    GET /api/submissions/by-status  - filtered by overall status

Public:
    GET /api/submissions/{id}/status - status page payload (rate limited)
"""

import uuid
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, Request

from submission_monitor.api.deps import client_ident, get_engine
from submission_monitor.core.auth import AdminUser, require_admin
from submission_monitor.domain.retry import RetryTaskStatus
from submission_monitor.schemas.monitoring import SubmissionOverview
from submission_monitor.schemas.progress import PublicSubmissionStatus, SubmissionPage
from submission_monitor.services.engine import MonitoringEngine

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/overview", response_model=SubmissionOverview)
async def submissions_overview(
    project_id: uuid.UUID | None = Query(None, alias="projectId"),
    start: datetime | None = None,
    end: datetime | None = None,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> SubmissionOverview:
    stats = await engine.analytics.submission_stats(project_id=project_id, start=start, end=end)
    stale = await engine.stale_detector.find_stale(project_id=project_id)
    exhausted = await engine.orchestrator.list_tasks(status=RetryTaskStatus.EXHAUSTED.value)
    return SubmissionOverview(stats=stats, stale_submissions=stale, exhausted_retries=exhausted)


@router.get("/recent", response_model=SubmissionPage)
async def recent_submissions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    project_id: uuid.UUID | None = Query(None, alias="projectId"),
    pathway: str | None = None,
    status: str | None = None,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> SubmissionPage:
    items = await engine.tracker.list_snapshots(
        status=status, project_id=project_id, pathway=pathway, limit=limit, offset=offset
    )
    return SubmissionPage(items=items, limit=limit, offset=offset)


@router.get("/failed", response_model=SubmissionPage)
async def failed_submissions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    project_id: uuid.UUID | None = Query(None, alias="projectId"),
    pathway: str | None = None,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> SubmissionPage:
    items = await engine.tracker.list_snapshots(
        failed_only=True, project_id=project_id, pathway=pathway, limit=limit, offset=offset
    )
    return SubmissionPage(items=items, limit=limit, offset=offset)


@router.get("/by-status", response_model=SubmissionPage)
async def submissions_by_status(
    status: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    project_id: uuid.UUID | None = Query(None, alias="projectId"),
    pathway: str | None = None,
    _: AdminUser = Depends(require_admin),
    engine: MonitoringEngine = Depends(get_engine),
) -> SubmissionPage:
    items = await engine.tracker.list_snapshots(
        status=status, project_id=project_id, pathway=pathway, limit=limit, offset=offset
    )
    return SubmissionPage(items=items, limit=limit, offset=offset)


@router.get("/{submission_id}/status", response_model=PublicSubmissionStatus)
async def public_submission_status(
    submission_id: uuid.UUID,
    request: Request,
    engine: MonitoringEngine = Depends(get_engine),
) -> PublicSubmissionStatus:
    """Public status page. Rate limited per client; serves last-known-good data on store outages."""
    await engine.rate_limiter.hit(client_ident(request))
    return await engine.public_status.get_status(submission_id)
