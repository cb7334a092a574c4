"""Redis connection service.

Owns the single ``redis.asyncio`` client shared by the lock, the rate
limiter, the job queue and the subscription token store.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis

from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger, log_store_operation

logger = get_logger(__name__)


class CacheService:
    """Async Redis service with JSON helpers."""

    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None):
        self.settings = settings
        self.redis: Optional[redis.Redis] = client
        self._owns_client = client is None

    async def startup(self):
        """Open the Redis connection and verify it answers."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
        try:
            await self.redis.ping()
        except Exception as e:
            logger.error("Redis connection failed", url=self.settings.redis_url, error=str(e))
            raise
        logger.info("Redis initialized", url=self.settings.redis_url)

    async def shutdown(self):
        """Close Redis connections."""
        if self.redis and self._owns_client:
            await self.redis.aclose()
            logger.info("Redis connections closed")

    @property
    def client(self) -> redis.Redis:
        if self.redis is None:
            raise RuntimeError("Redis not initialized")
        return self.redis

    async def get(self, key: str) -> Optional[Any]:
        """Get a JSON value."""
        value = await self.client.get(key)
        log_store_operation(logger, "get", key, hit=value is not None)
        return json.loads(value) if value is not None else None

    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        """Set a JSON value with an optional millisecond expiry."""
        await self.client.set(key, json.dumps(value, default=str), px=ttl_ms)
        log_store_operation(logger, "set", key, ttl_ms=ttl_ms)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        deleted = await self.client.delete(*keys)
        log_store_operation(logger, "delete", ",".join(keys), deleted=deleted)
        return deleted

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning("Redis health check failed", error=str(e))
            return False
