"""Redis-backed rate limiting.

Fixed window: one counter per key whose expiry is set on the first hit.
Sliding window: a sorted set of request timestamps.

Both fail open: when Redis errors, the request is allowed and the error is
logged.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Optional

from flowrunner.constants import RATE_LIMIT_KEY_PREFIX, SLIDING_RATE_LIMIT_KEY_PREFIX
from flowrunner.core.cache import CacheService
from flowrunner.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_REQUESTS = 2
DEFAULT_WINDOW_MS = 24 * 60 * 60 * 1000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch ms
    retry_after_ms: Optional[int] = None


@dataclass
class RateLimitStatus:
    count: int
    remaining: int
    reset_time: Optional[int]


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Per-key request budgets."""

    def __init__(self, cache: CacheService):
        self.cache = cache

    async def check_rate_limit(self, key: str, max_requests: int = DEFAULT_MAX_REQUESTS,
                               window_ms: int = DEFAULT_WINDOW_MS) -> RateLimitResult:
        """Count one request against a fixed window."""
        redis_key = f"{RATE_LIMIT_KEY_PREFIX}{key}"
        now = _now_ms()

        try:
            async with self.cache.client.pipeline(transaction=True) as pipe:
                pipe.get(redis_key)
                pipe.pttl(redis_key)
                current, ttl = await pipe.execute()

            count = int(current) if current else 0

            if count >= max_requests:
                retry_after = ttl if ttl and ttl > 0 else window_ms
                logger.info("Rate limit exceeded", key=key, count=count, max_requests=max_requests)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=now + retry_after,
                    retry_after_ms=retry_after,
                )

            new_count = await self.cache.client.incr(redis_key)
            if new_count == 1:
                await self.cache.client.pexpire(redis_key, window_ms)
                ttl = window_ms

            reset_in = ttl if ttl and ttl > 0 else window_ms
            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - new_count),
                reset_time=now + reset_in,
            )

        except Exception as e:
            logger.error("Rate limit check failed, allowing request", key=key, error=str(e))
            return RateLimitResult(allowed=True, remaining=max_requests, reset_time=now + window_ms)

    async def check_sliding_window(self, key: str, max_requests: int = DEFAULT_MAX_REQUESTS,
                                   window_ms: int = DEFAULT_WINDOW_MS) -> RateLimitResult:
        """Count one request against a sliding window."""
        redis_key = f"{SLIDING_RATE_LIMIT_KEY_PREFIX}{key}"
        now = _now_ms()
        window_start = now - window_ms

        try:
            async with self.cache.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, 0, window_start)
                pipe.zcard(redis_key)
                _, count = await pipe.execute()

            if count >= max_requests:
                oldest = await self.cache.client.zrange(redis_key, 0, 0, withscores=True)
                oldest_ts = int(oldest[0][1]) if oldest else now
                retry_after = max(0, oldest_ts + window_ms - now)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=oldest_ts + window_ms,
                    retry_after_ms=retry_after,
                )

            async with self.cache.client.pipeline(transaction=True) as pipe:
                pipe.zadd(redis_key, {f"{now}-{uuid.uuid4().hex[:8]}": now})
                pipe.pexpire(redis_key, window_ms)
                await pipe.execute()

            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - count - 1),
                reset_time=now + window_ms,
            )

        except Exception as e:
            logger.error("Sliding rate limit check failed, allowing request", key=key, error=str(e))
            return RateLimitResult(allowed=True, remaining=max_requests, reset_time=now + window_ms)

    async def reset(self, key: str) -> None:
        await self.cache.delete(f"{RATE_LIMIT_KEY_PREFIX}{key}", f"{SLIDING_RATE_LIMIT_KEY_PREFIX}{key}")
        logger.info("Rate limit reset", key=key)

    async def get_status(self, key: str, max_requests: int = DEFAULT_MAX_REQUESTS) -> RateLimitStatus:
        """Read the fixed-window counter without consuming a request."""
        redis_key = f"{RATE_LIMIT_KEY_PREFIX}{key}"
        async with self.cache.client.pipeline(transaction=True) as pipe:
            pipe.get(redis_key)
            pipe.pttl(redis_key)
            current, ttl = await pipe.execute()

        count = int(current) if current else 0
        return RateLimitStatus(
            count=count,
            remaining=max(0, max_requests - count),
            reset_time=_now_ms() + ttl if ttl and ttl > 0 else None,
        )
