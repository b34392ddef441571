"""Deterministic snapshot derivation from progress events.

Pure functions with no external dependencies. The snapshot read model is
always a fold of the event sequence ordered by ``(occurred_at, id)``, so the
incremental update applied on every write and a full rebuild from the log
produce the same result.
"""

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from submission_monitor.domain.stages import ProgressStatus


class EventLike(Protocol):
    id: int | None
    stage: str
    status: str
    occurred_at: datetime


@dataclass(frozen=True)
class SnapshotState:
    """Derived per-submission state, mirrored by the submission_snapshots row."""

    status: str
    latest_stage: str
    latest_stage_status: str
    last_event_at: datetime
    last_event_id: int | None
    first_event_at: datetime
    completed_at: datetime | None = None
    failed_events: int = 0
    last_failed_at: datetime | None = None


def derive_overall_status(stage: str, status: str, terminal_stages: Iterable[str]) -> str:
    """Overall submission status from its most recent event.

    Latest event wins. A ``completed`` event only completes the submission when
    it closes a terminal stage; completing an intermediate stage leaves the
    submission ``in_progress``.

    Pure function -- deterministic, no side effects.
    """
    if status == ProgressStatus.COMPLETED.value and stage not in set(terminal_stages):
        return ProgressStatus.IN_PROGRESS.value
    return status


def _sort_key(event: EventLike) -> tuple[datetime, int]:
    return (event.occurred_at, event.id if event.id is not None else 0)


def is_newer(event: EventLike, state: SnapshotState) -> bool:
    """True when ``event`` sorts after the event the snapshot currently reflects."""
    if event.occurred_at != state.last_event_at:
        return event.occurred_at > state.last_event_at
    # Same timestamp: the later insert (higher id) wins
    if event.id is None or state.last_event_id is None:
        return True
    return event.id > state.last_event_id


def fold_event(
    state: SnapshotState | None,
    event: EventLike,
    terminal_stages: Iterable[str],
) -> SnapshotState:
    """Apply one event to a snapshot state.

    Events older than the current latest event still count towards failure
    statistics and first_event_at but do not move the latest stage.
    """
    failed = event.status == ProgressStatus.FAILED.value
    overall = derive_overall_status(event.stage, event.status, terminal_stages)

    if state is None:
        return SnapshotState(
            status=overall,
            latest_stage=event.stage,
            latest_stage_status=event.status,
            last_event_at=event.occurred_at,
            last_event_id=event.id,
            first_event_at=event.occurred_at,
            completed_at=event.occurred_at if overall == ProgressStatus.COMPLETED.value else None,
            failed_events=1 if failed else 0,
            last_failed_at=event.occurred_at if failed else None,
        )

    failed_events = state.failed_events + (1 if failed else 0)
    last_failed_at = state.last_failed_at
    if failed and (last_failed_at is None or event.occurred_at > last_failed_at):
        last_failed_at = event.occurred_at
    first_event_at = min(state.first_event_at, event.occurred_at)

    if not is_newer(event, state):
        return replace(
            state,
            first_event_at=first_event_at,
            failed_events=failed_events,
            last_failed_at=last_failed_at,
        )

    return SnapshotState(
        status=overall,
        latest_stage=event.stage,
        latest_stage_status=event.status,
        last_event_at=event.occurred_at,
        last_event_id=event.id,
        first_event_at=first_event_at,
        completed_at=event.occurred_at if overall == ProgressStatus.COMPLETED.value else None,
        failed_events=failed_events,
        last_failed_at=last_failed_at,
    )


def derive_snapshot(
    events: Iterable[EventLike],
    terminal_stages: Iterable[str],
) -> SnapshotState | None:
    """Re-derive a snapshot from a full event sequence (any order)."""
    terminal = tuple(terminal_stages)
    state: SnapshotState | None = None
    for event in sorted(events, key=_sort_key):
        state = fold_event(state, event, terminal)
    return state
