"""Pydantic schemas for progress events, timelines and submission snapshots."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProgressEventRecord(BaseModel):
    """A persisted progress event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int = Field(..., description="Monotonic event id")
    submission_id: UUID = Field(..., description="Submission UUID")
    stage: str = Field(..., description="Pipeline stage")
    status: str = Field(..., description="Stage status (pending, in_progress, completed, failed)")
    detail: str | None = Field(None, description="Free-form diagnostic text")
    metadata: dict[str, Any] | None = Field(
        None,
        validation_alias="event_metadata",
        description="Structured payload",
    )
    occurred_at: datetime = Field(..., description="When the transition happened")


class TimelineEntry(BaseModel):
    """Timeline row with human-readable labels."""

    stage: str
    stage_label: str
    status: str
    status_label: str
    detail: str | None = None
    metadata: dict[str, Any] | None = None
    occurred_at: datetime


class SubmissionTimeline(BaseModel):
    submission_id: UUID
    timeline: list[TimelineEntry] = Field(default_factory=list)


class SubmissionSnapshotView(BaseModel):
    """Derived per-submission state used by dashboard listings."""

    model_config = ConfigDict(from_attributes=True)

    submission_id: UUID
    project_id: UUID
    pathway: str | None = None
    status: str = Field(..., description="Overall status derived from the latest event")
    latest_stage: str
    latest_stage_status: str
    last_event_at: datetime
    first_event_at: datetime
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    failed_events: int = 0
    last_failed_at: datetime | None = None


class SubmissionPage(BaseModel):
    items: list[SubmissionSnapshotView] = Field(default_factory=list)
    limit: int
    offset: int


class PublicSubmissionStatus(BaseModel):
    """Public status page payload (no internal metadata)."""

    submission_id: UUID
    status: str
    status_label: str
    latest_stage: str | None = None
    latest_stage_label: str | None = None
    last_event_at: datetime | None = None
    action_required: bool = False
    timeline: list[TimelineEntry] = Field(default_factory=list)
    stale: bool = Field(False, description="True when served from last-known-good data")
