"""Pydantic schemas for health check records and snapshots."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentKind(str, Enum):
    SYSTEM = "system"
    INTEGRATION = "integration"
    AI_PROVIDER = "ai_provider"


# Worst-of ordering used to roll component statuses into an overall status
STATUS_SEVERITY = {
    HealthStatus.HEALTHY.value: 0,
    HealthStatus.DEGRADED.value: 1,
    HealthStatus.UNHEALTHY.value: 2,
}


class ProbeResult(BaseModel):
    """Outcome of one probe, before it is persisted."""

    component: str
    kind: ComponentKind
    status: HealthStatus
    detail: str | None = None
    details: dict[str, Any] | None = None
    latency_ms: int | None = None
    checked_at: datetime


class HealthCheckView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    component: str
    kind: str
    status: str
    detail: str | None = None
    details: dict[str, Any] | None = None
    latency_ms: int | None = None
    checked_at: datetime


class HealthSnapshot(BaseModel):
    """Current health: latest record per component."""

    ok: bool
    status: str
    components: list[HealthCheckView] = Field(default_factory=list)
    checked_at: datetime
