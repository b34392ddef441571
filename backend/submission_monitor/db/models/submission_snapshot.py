"""SubmissionSnapshot model: derived read model, one row per submission.

Written only by the StageTracker as a fold over progress events; safe to
drop and rebuild from the event log at any time.
"""

from sqlalchemy import BigInteger, Column, Index, Integer, String, Uuid

from submission_monitor.db.base import Base, UTCDateTime, utcnow


class SubmissionSnapshot(Base):
    __tablename__ = "submission_snapshots"
    __table_args__ = (
        Index("ix_submission_snapshots_status_last_event", "status", "last_event_at"),
        Index("ix_submission_snapshots_project_last_event", "project_id", "last_event_at"),
    )

    submission_id = Column(Uuid, primary_key=True)
    project_id = Column(Uuid, nullable=False)
    pathway = Column(String(50), nullable=True)
    submitted_at = Column(UTCDateTime, nullable=True)  # submission creation time

    status = Column(String(20), nullable=False)  # overall status
    latest_stage = Column(String(50), nullable=False)
    latest_stage_status = Column(String(20), nullable=False)
    last_event_at = Column(UTCDateTime, nullable=False)
    last_event_id = Column(BigInteger, nullable=True)
    first_event_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)

    failed_events = Column(Integer, nullable=False, default=0)
    last_failed_at = Column(UTCDateTime, nullable=True)

    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
