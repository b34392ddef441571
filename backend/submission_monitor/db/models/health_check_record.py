"""HealthCheckRecord model: append-only probe results per component."""

import uuid

from sqlalchemy import Column, Index, Integer, String, Text, Uuid

from submission_monitor.db.base import Base, JSONType, UTCDateTime, utcnow


class HealthCheckRecord(Base):
    __tablename__ = "health_check_records"
    __table_args__ = (
        Index("ix_health_check_records_component_checked", "component", "checked_at"),
        Index("ix_health_check_records_kind_checked", "kind", "checked_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    component = Column(String(100), nullable=False)  # database, redis, council_email, openai, ...
    kind = Column(String(20), nullable=False)  # system | integration | ai_provider
    status = Column(String(20), nullable=False)  # healthy | degraded | unhealthy
    detail = Column(Text, nullable=True)
    details = Column(JSONType, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    checked_at = Column(UTCDateTime, nullable=False, default=utcnow)
