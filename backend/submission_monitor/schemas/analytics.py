"""Pydantic schemas for cached dashboard aggregates."""

from datetime import datetime

from pydantic import BaseModel, Field


class SubmissionStats(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    awaiting_review: int = Field(0, description="Latest stage is review and not yet finished")
    submitted_today: int = 0
    avg_completion_hours: float | None = None
    generated_at: datetime


class PathwayShare(BaseModel):
    pathway: str
    total: int
    percentage: float


class PathwayBreakdown(BaseModel):
    total: int = 0
    pathways: list[PathwayShare] = Field(default_factory=list)
    generated_at: datetime


class ErrorGroup(BaseModel):
    stage: str
    reason: str
    occurrences: int
    last_occurrence: datetime
    sample_error: str | None = None


class ErrorAnalysis(BaseModel):
    window_days: int
    total_failures: int = 0
    groups: list[ErrorGroup] = Field(default_factory=list)
    generated_at: datetime


class IntegrationMetric(BaseModel):
    component: str
    latest_status: str
    checks: int
    success_count: int
    degraded_count: int
    failure_count: int
    success_rate: float
    avg_latency_ms: float | None = None
    last_checked: datetime


class IntegrationMetrics(BaseModel):
    window_hours: int
    integrations: list[IntegrationMetric] = Field(default_factory=list)
    generated_at: datetime
