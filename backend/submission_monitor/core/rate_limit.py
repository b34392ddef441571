"""Sliding-window rate limiting in Redis for the public status page.

Each client has a sorted set of request timestamps. One MULTI pipeline drops
entries older than the window, adds the current request and counts what is
left, so at most ``limit`` requests are accepted in any ``window_seconds``
span. Rejected requests are removed again and do not extend the block.
If Redis is unreachable the request is allowed.
"""

import math
import time
import uuid

import redis.asyncio as redis
import structlog

from submission_monitor.core.exceptions import RateLimitedError
from submission_monitor.db.redis import redis_key

logger = structlog.get_logger(__name__)


class RateLimiter:
    def __init__(self, redis_client: redis.Redis, limit: int = 30, window_seconds: int = 60, scope: str = "public"):
        self.redis = redis_client
        self.limit = limit
        self.window_seconds = window_seconds
        self.scope = scope

    def _key(self, ident: str) -> str:
        return redis_key("rl", self.scope, ident)

    async def hit(self, ident: str, now: float | None = None) -> int:
        """Count one request for ``ident``.

        Returns the number of accepted requests in the trailing window,
        this one included.

        Raises:
            RateLimitedError: ``limit`` requests were already accepted in the window
        """
        now = time.time() if now is None else now
        key = self._key(ident)
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - self.window_seconds)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.expire(key, self.window_seconds)
                _, _, current, _ = await pipe.execute()

            if current <= self.limit:
                return current

            await self.redis.zrem(key, member)
            oldest = await self.redis.zrange(key, 0, 0, withscores=True)
        except redis.RedisError as exc:
            logger.warning("rate_limit_unavailable", scope=self.scope, error=str(exc))
            return 0

        # The slot frees up when the oldest accepted request leaves the window
        oldest_at = oldest[0][1] if oldest else now
        retry_after = max(1, math.ceil(oldest_at + self.window_seconds - now))
        logger.info("rate_limited", scope=self.scope, client=ident, count=current - 1)
        raise RateLimitedError(retry_after=retry_after)
