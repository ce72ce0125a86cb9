"""
Request rate limiting — injectable sliding-window counters.

Two implementations share the ``RateLimiter`` interface:

    InMemoryRateLimiter   per-process dict of timestamps (default)
    RedisRateLimiter      sorted-set per key, shared across instances

Both answer the same question: may ``key`` make one more request within
the last ``window_seconds``? An allowed hit is recorded; a refused one is
not.

Usage:
    from backend.alerting.core.rate_limit import build_rate_limiter

    limiter = build_rate_limiter()
    if not await limiter.hit(f"dispatch:{actor_id}"):
        raise RateLimitError(retry_after=limiter.window_seconds)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from backend.alerting.core.config import settings

logger = logging.getLogger(__name__)


class RateLimiter(ABC):
    """Sliding-window request counter keyed by caller identity."""

    def __init__(self, window_seconds: float, max_requests: int):
        self.window_seconds = window_seconds
        self.max_requests = max_requests

    @abstractmethod
    async def hit(self, key: str) -> bool:
        """Record a request for ``key``; False if the budget is exhausted."""

    @abstractmethod
    async def remaining(self, key: str) -> int:
        """Requests still allowed for ``key`` in the current window."""

    async def ping(self) -> bool:
        return True


class InMemoryRateLimiter(RateLimiter):
    """
    Single-process limiter. Not shared between workers.

    Every hit sweeps keys whose whole history has left the window, so
    callers that never return do not accumulate.
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(window_seconds, max_requests)
        self._clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, key: str, now: float) -> List[float]:
        recent = [t for t in self._hits.get(key, []) if now - t < self.window_seconds]
        if recent:
            self._hits[key] = recent
        else:
            self._hits.pop(key, None)
        return recent

    def _sweep(self, now: float) -> None:
        idle = [k for k, stamps in self._hits.items() if now - stamps[-1] >= self.window_seconds]
        for k in idle:
            del self._hits[k]

    async def hit(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            recent = self._prune(key, now)
            if len(recent) >= self.max_requests:
                return False
            self._hits[key] = recent + [now]
            return True

    async def remaining(self, key: str) -> int:
        async with self._lock:
            recent = self._prune(key, self._clock())
            return max(0, self.max_requests - len(recent))


class RedisRateLimiter(RateLimiter):
    """
    Limiter backed by a Redis sorted set per key.

    Members are unique request ids scored by wall-clock time; entries older
    than the window are trimmed on every call and the key expires after
    one idle window.

    The count check and the insert are two round trips, so concurrent
    bursts on the same key can overshoot the limit by a few requests.
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        *,
        redis_url: Optional[str] = None,
        client=None,
        prefix: str = "ratelimit",
    ):
        super().__init__(window_seconds, max_requests)
        self._redis_url = redis_url or settings.REDIS_URL
        self._client = client
        self._prefix = prefix

    async def _get_redis(self):
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Rate limiter connected to Redis: %s", self._redis_url)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def hit(self, key: str) -> bool:
        client = await self._get_redis()
        rkey = self._key(key)
        now = time.time()

        async with client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(rkey, 0, now - self.window_seconds)
            pipe.zcard(rkey)
            _, count = await pipe.execute()

        if count >= self.max_requests:
            return False

        async with client.pipeline(transaction=True) as pipe:
            pipe.zadd(rkey, {uuid.uuid4().hex: now})
            pipe.expire(rkey, int(self.window_seconds) + 1)
            await pipe.execute()
        return True

    async def remaining(self, key: str) -> int:
        client = await self._get_redis()
        rkey = self._key(key)
        await client.zremrangebyscore(rkey, 0, time.time() - self.window_seconds)
        count = await client.zcard(rkey)
        return max(0, self.max_requests - int(count))

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def build_rate_limiter(backend: Optional[str] = None) -> RateLimiter:
    """Build the limiter selected by settings.RATE_LIMIT_BACKEND."""
    backend = (backend or settings.RATE_LIMIT_BACKEND).lower()
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    limit = settings.RATE_LIMIT_MAX_REQUESTS

    if backend == "redis":
        return RedisRateLimiter(window, limit)
    if backend == "memory":
        return InMemoryRateLimiter(window, limit)
    raise ValueError(f"Unknown rate limit backend: {backend}")
