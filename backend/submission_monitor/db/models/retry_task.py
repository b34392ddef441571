"""RetryTask model: one mutable row per pending retry of a failed stage.

Python-level defaults are set explicitly in __init__ so that in-memory model
instances (unit tests, pre-flush objects) behave correctly without a DB round-trip.
"""

import uuid

from sqlalchemy import Column, Index, Integer, String, Text, Uuid, text

from submission_monitor.db.base import Base, UTCDateTime, utcnow

_ACTIVE = text("status IN ('queued', 'in_flight')")


class RetryTask(Base):
    __tablename__ = "retry_tasks"
    __table_args__ = (
        # At most one queued/in_flight task per (submission, stage)
        Index(
            "uq_retry_tasks_active_pair",
            "submission_id",
            "stage",
            unique=True,
            postgresql_where=_ACTIVE,
            sqlite_where=_ACTIVE,
        ),
        Index("ix_retry_tasks_status_eligible", "status", "next_eligible_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    submission_id = Column(Uuid, nullable=False, index=True)
    stage = Column(String(50), nullable=False)

    # Lifecycle: queued | in_flight | succeeded | exhausted
    status = Column(String(20), nullable=False, default="queued")
    trigger = Column(String(20), nullable=False, default="failed_event")

    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    next_eligible_at = Column(UTCDateTime, nullable=False, default=utcnow)
    # Deadline after which an in_flight claim may be reclaimed
    lease_expires_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __init__(self, **kwargs: object) -> None:
        # Column(default=...) only fires at DB INSERT
        kwargs.setdefault("status", "queued")
        kwargs.setdefault("trigger", "failed_event")
        kwargs.setdefault("attempt_count", 0)
        super().__init__(**kwargs)
