"""
test_rate_limit.py — Request rate limiter tests.

Covers:
    • In-memory sliding window with an injected clock; idle keys swept
    • Redis limiter command flow against an in-test sorted-set double
    • Backend selection

Run with:
    pytest tests/test_rate_limit.py -v
"""

from __future__ import annotations

from typing import Dict, List

import pytest

from backend.alerting.core.rate_limit import (
    InMemoryRateLimiter,
    RedisRateLimiter,
    build_rate_limiter,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._ops: List = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __getattr__(self, name):
        def queue(*args):
            self._ops.append((name, args))
        return queue

    async def execute(self):
        results = [await getattr(self._client, name)(*args) for name, args in self._ops]
        self._ops = []
        return results


class FakeRedis:
    """Just enough of the redis.asyncio sorted-set API for the limiter."""

    def __init__(self):
        self.sets: Dict[str, Dict[str, float]] = {}
        self.expiries: Dict[str, int] = {}
        self.closed = False

    def pipeline(self, transaction: bool = True):
        return _FakePipeline(self)

    async def zremrangebyscore(self, key, low, high):
        members = self.sets.get(key, {})
        doomed = [m for m, score in members.items() if low <= score <= high]
        for m in doomed:
            del members[m]
        return len(doomed)

    async def zcard(self, key):
        return len(self.sets.get(key, {}))

    async def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True

    async def ping(self):
        return True

    async def close(self):
        self.closed = True


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryRateLimiter:

    @pytest.mark.asyncio
    async def test_refuses_after_budget(self):
        limiter = InMemoryRateLimiter(60, 2, clock=FakeClock())
        assert await limiter.hit("actor:a") is True
        assert await limiter.hit("actor:a") is True
        assert await limiter.hit("actor:a") is False
        assert await limiter.remaining("actor:a") == 0

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = InMemoryRateLimiter(60, 1, clock=FakeClock())
        assert await limiter.hit("actor:a")
        assert await limiter.hit("actor:b")

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter(60, 1, clock=clock)
        await limiter.hit("ip:1.2.3.4")
        clock.now += 59
        assert await limiter.hit("ip:1.2.3.4") is False
        clock.now += 2
        assert await limiter.hit("ip:1.2.3.4") is True

    @pytest.mark.asyncio
    async def test_refused_hits_not_recorded(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter(10, 1, clock=clock)
        await limiter.hit("k")
        for _ in range(5):
            await limiter.hit("k")
        clock.now += 10
        assert await limiter.remaining("k") == 1

    @pytest.mark.asyncio
    async def test_idle_keys_swept_on_hit(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter(60, 5, clock=clock)
        for n in range(3):
            await limiter.hit(f"ip:10.0.0.{n}")
        clock.now += 30
        await limiter.hit("actor:late")
        clock.now += 31

        await limiter.hit("actor:other")

        assert set(limiter._hits) == {"actor:late", "actor:other"}


# ═══════════════════════════════════════════════════════════════════════════
# Redis
# ═══════════════════════════════════════════════════════════════════════════

class TestRedisRateLimiter:

    @pytest.mark.asyncio
    async def test_hit_and_refuse(self):
        client = FakeRedis()
        limiter = RedisRateLimiter(60, 2, client=client)

        assert await limiter.hit("actor:a")
        assert await limiter.hit("actor:a")
        assert await limiter.hit("actor:a") is False
        assert len(client.sets["ratelimit:actor:a"]) == 2
        assert client.expiries["ratelimit:actor:a"] == 61

    @pytest.mark.asyncio
    async def test_remaining(self):
        client = FakeRedis()
        limiter = RedisRateLimiter(60, 3, client=client, prefix="rl")
        assert await limiter.remaining("k") == 3
        await limiter.hit("k")
        assert await limiter.remaining("k") == 2
        assert "rl:k" in client.sets

    @pytest.mark.asyncio
    async def test_ping_and_close(self):
        client = FakeRedis()
        limiter = RedisRateLimiter(60, 3, client=client)
        assert await limiter.ping() is True
        await limiter.close()
        assert client.closed


# ═══════════════════════════════════════════════════════════════════════════
# Selection
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildRateLimiter:

    def test_memory_default(self):
        assert isinstance(build_rate_limiter("memory"), InMemoryRateLimiter)

    def test_redis(self):
        assert isinstance(build_rate_limiter("REDIS"), RedisRateLimiter)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_rate_limiter("memcached")
