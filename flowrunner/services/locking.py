"""Distributed lock on Redis.

Acquire is ``SET lock:<key> <value> NX EX <ttl>``; release is a Lua
check-and-delete so a holder whose lock expired cannot delete a lock
another worker has since acquired.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from flowrunner.constants import LOCK_KEY_PREFIX
from flowrunner.core.cache import CacheService
from flowrunner.core.logging import get_logger, log_store_operation

logger = get_logger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

DEFAULT_LOCK_TTL_SECONDS = 60
DEFAULT_RETRY_ATTEMPTS = 0
DEFAULT_RETRY_DELAY_MS = 100


class LockNotAcquiredError(Exception):
    """Raised by ``DistributedLock.hold`` when the lock is busy."""

    def __init__(self, key: str, error: Optional[str] = None):
        super().__init__(error or f"Could not acquire lock: {key}")
        self.key = key


@dataclass
class LockResult:
    acquired: bool
    lock_value: Optional[str] = None
    error: Optional[str] = None


class DistributedLock:
    """Mutual exclusion across workers for a named resource."""

    def __init__(self, cache: CacheService):
        self.cache = cache

    @staticmethod
    def _key(key: str) -> str:
        return f"{LOCK_KEY_PREFIX}{key}"

    async def acquire(self, key: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
                      retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
                      retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS) -> LockResult:
        """Try to take the lock, retrying ``retry_attempts`` extra times.

        Store errors are reported as ``acquired=False`` with ``error`` set.
        """
        lock_key = self._key(key)
        lock_value = f"{int(time.time() * 1000)}-{uuid.uuid4()}"

        try:
            for attempt in range(retry_attempts + 1):
                acquired = await self.cache.client.set(lock_key, lock_value, nx=True, ex=ttl_seconds)
                if acquired:
                    log_store_operation(logger, "lock_acquire", lock_key, attempt=attempt)
                    return LockResult(acquired=True, lock_value=lock_value)
                if attempt < retry_attempts:
                    await asyncio.sleep(retry_delay_ms / 1000)
        except Exception as e:
            logger.error("Lock acquire failed", key=lock_key, error=str(e))
            return LockResult(acquired=False, error=str(e))

        logger.debug("Lock busy", key=lock_key, attempts=retry_attempts + 1)
        return LockResult(acquired=False, error="Lock is held by another process")

    async def release(self, key: str, lock_value: str) -> bool:
        """Delete the lock only if it still holds ``lock_value``."""
        lock_key = self._key(key)
        try:
            deleted = await self.cache.client.eval(RELEASE_SCRIPT, 1, lock_key, lock_value)
        except Exception as e:
            logger.error("Lock release failed", key=lock_key, error=str(e))
            return False

        if not deleted:
            logger.warning("Lock not released, value mismatch or expired", key=lock_key)
        return bool(deleted)

    async def is_locked(self, key: str) -> bool:
        return bool(await self.cache.client.exists(self._key(key)))

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
                   retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
                   retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS):
        """Hold the lock for the duration of the block.

        Raises:
            LockNotAcquiredError: If the lock could not be taken
        """
        result = await self.acquire(key, ttl_seconds, retry_attempts, retry_delay_ms)
        if not result.acquired:
            raise LockNotAcquiredError(key, result.error)
        try:
            yield result.lock_value
        finally:
            await self.release(key, result.lock_value)

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[Any]],
                        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
                        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
                        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS) -> Tuple[bool, Any]:
        """Run ``fn`` under the lock.

        Returns:
            ``(True, result)`` on success, ``(False, error_message)`` when the
            lock was busy. Exceptions raised by ``fn`` propagate after release.
        """
        try:
            async with self.hold(key, ttl_seconds, retry_attempts, retry_delay_ms):
                return True, await fn()
        except LockNotAcquiredError as e:
            return False, str(e)
