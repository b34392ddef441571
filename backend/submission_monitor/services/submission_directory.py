"""SubmissionDirectory: read-only lookup of collaborator-owned submission records.

The form workflow owns submissions. The monitoring engine only needs to know
whether an id exists and which project and pathway it belongs to.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.db.models.submission import Submission


@dataclass(frozen=True)
class SubmissionInfo:
    id: uuid.UUID
    project_id: uuid.UUID
    pathway: str | None
    created_at: datetime | None


class SubmissionDirectory(Protocol):
    async def get(self, submission_id: uuid.UUID) -> SubmissionInfo | None: ...


class SqlSubmissionDirectory:
    """SubmissionDirectory backed by the shared ``submissions`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, submission_id: uuid.UUID) -> SubmissionInfo | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Submission).where(Submission.id == submission_id))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return SubmissionInfo(
                id=row.id,
                project_id=row.project_id,
                pathway=row.pathway,
                created_at=row.created_at,
            )
