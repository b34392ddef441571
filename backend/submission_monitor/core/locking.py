"""Distributed locks in Redis so redundant instances don't run the same sweep.

SET NX with a TTL; the value records the owner and release is a
compare-and-delete, so only the owner removes it.
A crashed owner's lock expires on its own.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis
import structlog

from submission_monitor.db.redis import redis_key

logger = structlog.get_logger(__name__)


class SweepLock:
    """Manages named job locks using Redis."""

    DEFAULT_TTL = 300  # 5 minutes

    def __init__(self, redis_client: redis.Redis, owner: str):
        self.redis = redis_client
        self.owner = owner

    def _lock_key(self, name: str) -> str:
        return redis_key("lock", name)

    async def acquire(self, name: str, ttl: int | None = None) -> bool:
        """Try to take the lock.

        Returns:
            True if acquired (or already held by this owner), False otherwise
        """
        key = self._lock_key(name)
        ttl = ttl or self.DEFAULT_TTL

        lock_value = f"{self.owner}|{datetime.now(UTC).isoformat()}"
        if await self.redis.set(key, lock_value, nx=True, ex=ttl):
            return True

        current = await self.redis.get(key)
        if current and current.startswith(f"{self.owner}|"):
            await self.redis.expire(key, ttl)
            return True
        return False

    async def release(self, name: str) -> bool:
        """Delete the lock if this owner still holds it.

        WATCH makes the delete conditional on the value read: if the lock
        expired and another owner took it in between, EXEC aborts.
        """
        key = self._lock_key(name)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if not (current and current.startswith(f"{self.owner}|")):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except redis.WatchError:
                logger.warning("sweep_lock_lost_before_release", name=name, owner=self.owner)
                return False
        return True

    async def holder(self, name: str) -> str | None:
        current = await self.redis.get(self._lock_key(name))
        if not current:
            return None
        return current.split("|", 1)[0]

    @asynccontextmanager
    async def lock(self, name: str, ttl: int | None = None) -> AsyncGenerator[bool, None]:
        """Context manager form. Yields whether the lock was acquired.

        Example:
            async with sweep_lock.lock("stale_sweep") as acquired:
                if acquired:
                    await detector.sweep()
        """
        acquired = False
        try:
            acquired = await self.acquire(name, ttl)
            yield acquired
        finally:
            if acquired:
                await self.release(name)
