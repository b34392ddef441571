"""ProgressEvent model: append-only submission lifecycle ledger."""

from sqlalchemy import Column, Index, String, Text, Uuid

from submission_monitor.db.base import Base, BigIntPK, JSONType, UTCDateTime, utcnow


class ProgressEvent(Base):
    __tablename__ = "progress_events"
    __table_args__ = (
        Index("ix_progress_events_submission_order", "submission_id", "occurred_at", "id"),
        Index("ix_progress_events_stage_status", "stage", "status", "occurred_at"),
    )

    # Monotonic surrogate key; breaks ties between equal occurred_at values
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    submission_id = Column(Uuid, nullable=False)  # not a FK: submissions are owned elsewhere

    stage = Column(String(50), nullable=False)  # SubmissionStage values
    status = Column(String(20), nullable=False)  # ProgressStatus values
    detail = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSONType, nullable=True)

    occurred_at = Column(UTCDateTime, nullable=False, default=utcnow)
    recorded_at = Column(UTCDateTime, nullable=False, default=utcnow)
    # NO updated_at -- events are immutable (append-only)
