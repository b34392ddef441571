"""Periodic background tasks: stale sweep, retry run, health probes, cache warming.

Each task is an asyncio loop that waits on an asyncio.Event between ticks,
so stop() returns immediately instead of sleeping out the interval. Tests
call run_once() to drive a single tick. An optional Redis SweepLock keeps
redundant instances from running the same tick at the same time.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from submission_monitor.core.locking import SweepLock

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """Runs ``action`` every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], Awaitable[Any]],
        lock: SweepLock | None = None,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.action = action
        self.lock = lock
        self.runs = 0
        self.failures = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._log = logger.bind(task=name)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """Run one tick. Returns False when skipped (lock held elsewhere) or failed.

        Errors are logged and counted; the loop keeps going.
        """
        try:
            if self.lock is None:
                await self.action()
            else:
                # Lock outlives a stuck tick by at most two intervals
                async with self.lock.lock(self.name, ttl=max(int(self.interval_seconds * 2), 30)) as acquired:
                    if not acquired:
                        self._log.debug("periodic_task_skipped_locked")
                        return False
                    await self.action()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            self._log.error("periodic_task_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
            return False
        self.runs += 1
        return True

    async def _loop(self) -> None:
        self._log.info("periodic_task_started", interval_seconds=self.interval_seconds)
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue
        self._log.info("periodic_task_stopped", runs=self.runs, failures=self.failures)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop to exit; cancel it if the current tick overruns ``timeout``."""
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except TimeoutError:
            self._log.warning("periodic_task_cancelled", timeout=timeout)
            # wait_for already cancelled the task
        finally:
            self._task = None


class MonitoringScheduler:
    """Owns the engine's periodic tasks and their start/stop lifecycle."""

    def __init__(self, tasks: list[PeriodicTask] | None = None):
        self.tasks: list[PeriodicTask] = list(tasks or [])

    def add(self, task: PeriodicTask) -> None:
        self.tasks.append(task)

    def get(self, name: str) -> PeriodicTask | None:
        return next((t for t in self.tasks if t.name == name), None)

    def start(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info("scheduler_started", tasks=[t.name for t in self.tasks])

    async def stop(self, timeout: float = 10.0) -> None:
        await asyncio.gather(*(t.stop(timeout) for t in self.tasks))
        logger.info("scheduler_stopped")
