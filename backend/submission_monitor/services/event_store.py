"""EventStore: append-only ledger of submission progress events.

Events are never updated or deleted. Ordering within a submission is by
``(occurred_at, id)``; out-of-order arrivals are accepted unless the store is
configured for strict ordering.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.core.exceptions import ConflictError, ValidationError
from submission_monitor.db.base import utcnow
from submission_monitor.db.models.progress_event import ProgressEvent
from submission_monitor.db.models.submission_snapshot import SubmissionSnapshot
from submission_monitor.domain.stages import ProgressStatus

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 500


@dataclass
class NewEvent:
    """An event to append. ``occurred_at`` defaults to now."""

    submission_id: uuid.UUID
    stage: str
    status: str
    detail: str | None = None
    metadata: dict[str, Any] | None = None
    occurred_at: datetime | None = None
    recorded_at: datetime = field(default_factory=utcnow)


class EventStore:
    """Persists and queries ProgressEvent rows.

    ``append`` participates in a caller-supplied session so the StageTracker
    can write the event and the snapshot in one transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        strict_ordering: bool = False,
    ):
        self.session_factory = session_factory
        self.strict_ordering = strict_ordering

    async def append(self, event: NewEvent, session: AsyncSession | None = None) -> ProgressEvent:
        """Persist an event and return the stored row (with its id assigned).

        Without ``session`` the event is written and committed on its own.

        Raises:
            ConflictError: strict ordering is enabled and the event is older
                than the submission's latest event.
        """
        if session is None:
            async with self.session_factory() as own_session:
                row = await self.append(event, session=own_session)
                await own_session.commit()
                return row

        occurred_at = event.occurred_at or utcnow()
        if self.strict_ordering:
            latest = await self._latest_occurred_at(session, event.submission_id)
            if latest is not None and occurred_at < latest:
                raise ConflictError(
                    f"Event at {occurred_at.isoformat()} is older than latest event "
                    f"at {latest.isoformat()} for submission {event.submission_id}"
                )

        row = ProgressEvent(
            submission_id=event.submission_id,
            stage=event.stage,
            status=event.status,
            detail=event.detail,
            event_metadata=event.metadata,
            occurred_at=occurred_at,
            recorded_at=event.recorded_at,
        )
        session.add(row)
        await session.flush()
        return row

    async def _latest_occurred_at(self, session: AsyncSession, submission_id: uuid.UUID) -> datetime | None:
        # The snapshot row carries the latest timestamp; fall back to the log
        result = await session.execute(
            select(SubmissionSnapshot.last_event_at).where(SubmissionSnapshot.submission_id == submission_id)
        )
        latest = result.scalar_one_or_none()
        if latest is not None:
            return latest
        result = await session.execute(
            select(ProgressEvent.occurred_at)
            .where(ProgressEvent.submission_id == submission_id)
            .order_by(ProgressEvent.occurred_at.desc(), ProgressEvent.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def query_by_submission(self, submission_id: uuid.UUID) -> list[ProgressEvent]:
        """All events of one submission, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProgressEvent)
                .where(ProgressEvent.submission_id == submission_id)
                .order_by(ProgressEvent.occurred_at, ProgressEvent.id)
            )
            return list(result.scalars().all())

    async def query_range(
        self,
        stage: str | None = None,
        status: str | None = None,
        project_id: uuid.UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ProgressEvent]:
        """Filtered event listing, newest first.

        ``project_id`` filters through the snapshot read model, which records
        each submission's project.
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must be >= 0")

        stmt = select(ProgressEvent)
        if stage is not None:
            stmt = stmt.where(ProgressEvent.stage == stage)
        if status is not None:
            stmt = stmt.where(ProgressEvent.status == status)
        if project_id is not None:
            stmt = stmt.join(
                SubmissionSnapshot,
                SubmissionSnapshot.submission_id == ProgressEvent.submission_id,
            ).where(SubmissionSnapshot.project_id == project_id)
        if start is not None:
            stmt = stmt.where(ProgressEvent.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(ProgressEvent.occurred_at <= end)

        stmt = stmt.order_by(ProgressEvent.occurred_at.desc(), ProgressEvent.id.desc()).limit(limit).offset(offset)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def latest_for(self, submission_id: uuid.UUID) -> ProgressEvent | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProgressEvent)
                .where(ProgressEvent.submission_id == submission_id)
                .order_by(ProgressEvent.occurred_at.desc(), ProgressEvent.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def last_good_event(
        self,
        submission_id: uuid.UUID,
        exclude_stage: str | None = None,
    ) -> ProgressEvent | None:
        """Most recent ``completed`` event, optionally ignoring one stage.

        Retry operations use it to resume from the last step that succeeded
        rather than replaying the whole pipeline.
        """
        stmt = select(ProgressEvent).where(
            ProgressEvent.submission_id == submission_id,
            ProgressEvent.status == ProgressStatus.COMPLETED.value,
        )
        if exclude_stage is not None:
            stmt = stmt.where(ProgressEvent.stage != exclude_stage)
        stmt = stmt.order_by(ProgressEvent.occurred_at.desc(), ProgressEvent.id.desc()).limit(1)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
