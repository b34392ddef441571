"""Rebuild every submission snapshot from the progress event log."""

import asyncio

from sqlalchemy import select

from submission_monitor.core.config import get_settings
from submission_monitor.db.base import close_db, get_session_factory, init_db
from submission_monitor.db.models.progress_event import ProgressEvent
from submission_monitor.services.event_store import EventStore
from submission_monitor.services.stage_tracker import StageTracker
from submission_monitor.services.submission_directory import SqlSubmissionDirectory


async def main() -> None:
    settings = get_settings()
    await init_db()
    factory = get_session_factory()
    tracker = StageTracker(
        factory,
        EventStore(factory),
        SqlSubmissionDirectory(factory),
        terminal_stages=settings.terminal_stages,
    )

    async with factory() as session:
        result = await session.execute(select(ProgressEvent.submission_id).distinct())
        submission_ids = list(result.scalars().all())
    print(f"Rebuilding {len(submission_ids)} snapshot(s)...")

    for submission_id in submission_ids:
        snapshot = await tracker.rebuild_snapshot(submission_id)
        status = snapshot.status if snapshot else "no events"
        print(f"  {submission_id} | {status}")

    await close_db()
    print("\nALL DONE")


if __name__ == "__main__":
    asyncio.run(main())
