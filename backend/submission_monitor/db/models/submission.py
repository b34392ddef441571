"""Submission model: the collaborator-owned submission record.

Owned by the form workflow, not by the monitoring engine. Declared here so the
engine can resolve project and pathway for a submission id and so tests and
local development get the table from create_all.
"""

import uuid

from sqlalchemy import Column, String, Uuid

from submission_monitor.db.base import Base, UTCDateTime, utcnow


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, nullable=False, index=True)
    pathway = Column(String(50), nullable=True)  # direct, review, draft
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
