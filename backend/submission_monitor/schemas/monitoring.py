"""Pydantic schemas for stale detection, retry tasks and the admin overview."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class StaleCandidate(BaseModel):
    """A submission whose latest event is older than its stage threshold."""

    submission_id: UUID
    project_id: UUID
    status: str
    latest_stage: str
    latest_stage_status: str
    last_event_at: datetime
    minutes_inactive: float
    threshold_minutes: int


class RetryTaskView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    submission_id: UUID
    stage: str
    status: str
    trigger: str
    attempt_count: int
    max_attempts: int
    last_attempt_at: datetime | None = None
    next_eligible_at: datetime
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class RetryStageStatistics(BaseModel):
    stage: str
    total: int = 0
    queued: int = 0
    in_flight: int = 0
    succeeded: int = 0
    exhausted: int = 0
    avg_attempts: float = 0.0


class RetryStatistics(BaseModel):
    window_hours: int
    total: int = 0
    succeeded: int = 0
    exhausted: int = 0
    stages: list[RetryStageStatistics] = Field(default_factory=list)
    # Circuit state per stage: closed | open | half_open
    circuits: dict[str, str] = Field(default_factory=dict)


class SubmissionOverview(BaseModel):
    """Admin overview: stats plus items needing attention."""

    stats: dict[str, Any]
    stale_submissions: list[StaleCandidate] = Field(default_factory=list)
    exhausted_retries: list[RetryTaskView] = Field(
        default_factory=list,
        description="Retry tasks that need manual action",
    )
