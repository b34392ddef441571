"""Tests for the Redis rate limiter and sweep locks."""

import pytest

from submission_monitor.core.exceptions import RateLimitedError
from submission_monitor.core.locking import SweepLock
from submission_monitor.core.rate_limit import RateLimiter

pytestmark = pytest.mark.unit

START = 1_772_442_000.0


async def test_thirty_first_request_in_window_is_limited(redis_client):
    limiter = RateLimiter(redis_client, limit=30, window_seconds=60)

    for i in range(30):
        assert await limiter.hit("198.51.100.7", now=START + i) == i + 1

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.hit("198.51.100.7", now=START + 45)
    # The request made at START leaves the window at START + 60
    assert exc_info.value.retry_after == 15


async def test_requests_straddling_a_minute_boundary_share_one_quota(redis_client):
    limiter = RateLimiter(redis_client, limit=30, window_seconds=60)

    for _ in range(30):
        await limiter.hit("198.51.100.7", now=START + 59.5)

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.hit("198.51.100.7", now=START + 60.5)
    assert exc_info.value.retry_after == 59


async def test_rejected_requests_do_not_extend_the_block(redis_client):
    limiter = RateLimiter(redis_client, limit=2, window_seconds=60)
    await limiter.hit("a", now=START)
    await limiter.hit("a", now=START + 1)

    for offset in (10, 20, 30):
        with pytest.raises(RateLimitedError):
            await limiter.hit("a", now=START + offset)

    assert await limiter.hit("a", now=START + 60.5) == 2


async def test_quota_is_per_client_and_slides(redis_client):
    limiter = RateLimiter(redis_client, limit=1, window_seconds=60)

    await limiter.hit("a", now=START)
    await limiter.hit("b", now=START)
    assert await limiter.hit("a", now=START + 60) == 1


async def test_request_log_expires(redis_client):
    limiter = RateLimiter(redis_client, limit=5, window_seconds=60)

    await limiter.hit("a", now=START)

    ttl = await redis_client.ttl(limiter._key("a"))
    assert 0 < ttl <= 60


async def test_lock_is_exclusive_between_owners(redis_client):
    first = SweepLock(redis_client, owner="worker-1")
    second = SweepLock(redis_client, owner="worker-2")

    assert await first.acquire("stale_sweep", ttl=30)
    assert not await second.acquire("stale_sweep", ttl=30)
    assert await first.acquire("stale_sweep", ttl=30)
    assert await first.holder("stale_sweep") == "worker-1"

    assert not await second.release("stale_sweep")
    assert await first.release("stale_sweep")
    assert await first.holder("stale_sweep") is None
    assert await second.acquire("stale_sweep", ttl=30)


async def test_lock_context_manager_releases(redis_client):
    lock = SweepLock(redis_client, owner="worker-1")

    async with lock.lock("retry_run", ttl=30) as acquired:
        assert acquired
        assert await lock.holder("retry_run") == "worker-1"

    assert await lock.holder("retry_run") is None


async def test_release_leaves_a_lock_taken_over_after_expiry(redis_client):
    first = SweepLock(redis_client, owner="worker-1")
    second = SweepLock(redis_client, owner="worker-2")
    assert await first.acquire("retry_run", ttl=30)

    await redis_client.delete(first._lock_key("retry_run"))
    assert await second.acquire("retry_run", ttl=30)

    assert not await first.release("retry_run")
    assert await second.holder("retry_run") == "worker-2"


async def test_release_aborts_when_lock_changes_hands_mid_release(redis_client, monkeypatch):
    first = SweepLock(redis_client, owner="worker-1")
    second = SweepLock(redis_client, owner="worker-2")
    assert await first.acquire("stale_sweep", ttl=30)
    real_pipeline = redis_client.pipeline

    def pipeline_with_takeover(*args, **kwargs):
        pipe = real_pipeline(*args, **kwargs)
        real_get = pipe.get

        async def get_then_lose_lock(key):
            value = await real_get(key)
            # Expiry plus takeover between the read and the delete
            await redis_client.delete(key)
            await redis_client.set(key, "worker-2|later", ex=30)
            return value

        pipe.get = get_then_lose_lock
        return pipe

    monkeypatch.setattr(redis_client, "pipeline", pipeline_with_takeover)
    released = await first.release("stale_sweep")
    monkeypatch.undo()

    assert not released
    assert await second.holder("stale_sweep") == "worker-2"
