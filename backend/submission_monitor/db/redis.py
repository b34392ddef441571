"""Shared Redis client and key namespace.

Redis holds only advisory state for the monitoring engine: cached analytics
aggregates, public status fallbacks, rate-limit windows and sweep locks.
Durable state (events, snapshots, retry tasks, health records) lives in the
relational store.
"""

import redis.asyncio as redis

from submission_monitor.core.config import get_settings

KEY_PREFIX = "submon"

_redis: redis.Redis | None = None


def redis_key(*parts: object) -> str:
    """Build a namespaced key, e.g. ``submon:analytics:pathways:-``."""
    return ":".join([KEY_PREFIX, *(str(p) for p in parts)])


async def init_redis(url: str | None = None) -> None:
    """Initialize the shared Redis client and verify connectivity."""
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    _redis = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await _redis.ping()


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def set_redis(client: redis.Redis | None) -> None:
    """Install an already-built client (fakeredis in tests)."""
    global _redis
    _redis = client


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
