"""Retry task states, backoff policy and the per-stage circuit breaker.

Pure domain logic with no external dependencies.
"""
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class RetryTaskStatus(str, Enum):
    """Retry task lifecycle: queued -> in_flight -> succeeded | queued | exhausted."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class RetryTrigger(str, Enum):
    """What created the retry task."""

    FAILED_EVENT = "failed_event"
    STALE = "stale"
    MANUAL = "manual"


# Tasks that block creation of another task for the same (submission, stage)
ACTIVE_TASK_STATUSES = (RetryTaskStatus.QUEUED.value, RetryTaskStatus.IN_FLIGHT.value)

TRANSITIONS: dict[RetryTaskStatus, list[RetryTaskStatus]] = {
    RetryTaskStatus.QUEUED: [RetryTaskStatus.IN_FLIGHT],
    RetryTaskStatus.IN_FLIGHT: [
        RetryTaskStatus.SUCCEEDED,
        RetryTaskStatus.QUEUED,
        RetryTaskStatus.EXHAUSTED,
    ],
    RetryTaskStatus.SUCCEEDED: [],  # Terminal state
    RetryTaskStatus.EXHAUSTED: [RetryTaskStatus.QUEUED],  # Manual requeue only
}


def can_transition(current: RetryTaskStatus, target: RetryTaskStatus) -> bool:
    return target in TRANSITIONS.get(current, [])


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap, optional jitter and an attempt ceiling.

    ``jitter`` is a fraction in [0, 1). A jittered delay for attempt n lies in
    [d(n), d(n) + jitter * (d(n+1) - d(n))), so delays stay strictly increasing
    below the cap.
    """

    max_attempts: int = 5
    base_seconds: int = 60
    multiplier: float = 2.0
    cap_seconds: int = 3600
    jitter: float = 0.0

    def __post_init__(self):
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def _raw_backoff(self, attempt_count: int) -> float:
        if attempt_count < 1:
            return 0.0
        delay = self.base_seconds * (self.multiplier ** (attempt_count - 1))
        return float(min(delay, self.cap_seconds))

    def backoff_seconds(self, attempt_count: int, rand: float | None = None) -> float:
        """Delay after the ``attempt_count``-th failed attempt (1-indexed).

        Strictly increasing until it reaches ``cap_seconds``.
        """
        delay = self._raw_backoff(attempt_count)
        if self.jitter and delay:
            spread = self._raw_backoff(attempt_count + 1) - delay
            delay += self.jitter * spread * (random.random() if rand is None else rand)
        return delay

    def next_eligible_at(self, now: datetime, attempt_count: int) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds(attempt_count))

    def is_exhausted(self, attempt_count: int, max_attempts: int | None = None) -> bool:
        return attempt_count >= (max_attempts or self.max_attempts)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Per-stage breaker around retry operations.

    closed: failures inside ``window_seconds`` are counted; at
    ``failure_threshold`` the circuit opens.
    open: nothing runs until ``open_seconds`` have passed, then half_open.
    half_open: ``success_threshold`` successes close it, any failure reopens it.
    """

    failure_threshold: int = 5
    success_threshold: int = 2
    open_seconds: int = 60
    window_seconds: int = 300
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: datetime | None = None
    opened_until: datetime | None = None

    def allow(self, now: datetime) -> bool:
        if self.state == CircuitState.OPEN:
            if self.opened_until is not None and now < self.opened_until:
                return False
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
        return True

    def record_success(self, now: datetime) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
        elif self._window_elapsed(now):
            self.failure_count = 0

    def record_failure(self, now: datetime) -> None:
        if self.state == CircuitState.CLOSED and self._window_elapsed(now):
            self.failure_count = 0
        self.failure_count += 1
        self.last_failure_at = now
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_until = now + timedelta(seconds=self.open_seconds)

    def _window_elapsed(self, now: datetime) -> bool:
        return self.last_failure_at is not None and now - self.last_failure_at > timedelta(seconds=self.window_seconds)
