"""Short-lived subscription tokens for live execution streams.

Tokens are independent of the caller's primary auth credentials so they can
be put in a URL (EventSource cannot send headers). Each token is scoped to
one execution and one user.

Key schema:
    sseToken:{token}        -> JSON {token, executionId, userId, expiresAt}  (PX ttl)
    execToken:{execution}   -> SET {token}                                   (PX ttl)
"""

import json
import secrets
import time
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from flowrunner.constants import EXECUTION_TOKENS_KEY_PREFIX, SUBSCRIPTION_TOKEN_KEY_PREFIX
from flowrunner.core.cache import CacheService
from flowrunner.core.logging import get_logger

if TYPE_CHECKING:
    from flowrunner.core.database import Database

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL_MS = 60 * 60 * 1000


@dataclass
class SubscriptionToken:
    token: str
    execution_id: str
    user_id: str
    expires_at: int  # epoch ms

    def to_dict(self):
        return {
            "token": self.token,
            "executionId": self.execution_id,
            "userId": self.user_id,
            "expiresAt": self.expires_at,
        }


@dataclass
class TokenVerification:
    valid: bool
    user_id: Optional[str] = None
    error: Optional[str] = None


class SubscriptionTokenService:
    """Issues, verifies and revokes execution-scoped stream tokens."""

    def __init__(self, cache: CacheService, database: "Database",
                 ttl_ms: int = DEFAULT_TOKEN_TTL_MS):
        self.cache = cache
        self.database = database
        self.ttl_ms = ttl_ms

    async def generate(self, execution_id: str, user_id: str) -> SubscriptionToken:
        token = SubscriptionToken(
            token=secrets.token_hex(32),
            execution_id=execution_id,
            user_id=user_id,
            expires_at=int(time.time() * 1000) + self.ttl_ms,
        )
        index_key = f"{EXECUTION_TOKENS_KEY_PREFIX}{execution_id}"

        async with self.cache.client.pipeline(transaction=True) as pipe:
            pipe.set(f"{SUBSCRIPTION_TOKEN_KEY_PREFIX}{token.token}",
                     json.dumps(token.to_dict()), px=self.ttl_ms)
            pipe.sadd(index_key, token.token)
            pipe.pexpire(index_key, self.ttl_ms)
            await pipe.execute()

        logger.info("Subscription token issued", execution_id=execution_id, user_id=user_id)
        return token

    async def verify(self, execution_id: str, token: Optional[str]) -> TokenVerification:
        if not token:
            return TokenVerification(valid=False, error="Token is required")

        try:
            raw = await self.cache.client.get(f"{SUBSCRIPTION_TOKEN_KEY_PREFIX}{token}")
            if not raw:
                return TokenVerification(valid=False, error="Invalid or expired token")

            data = json.loads(raw)
            if data.get("executionId") != execution_id:
                return TokenVerification(valid=False, error="Token not valid for this execution")

            if data.get("expiresAt", 0) < int(time.time() * 1000):
                await self.cache.delete(f"{SUBSCRIPTION_TOKEN_KEY_PREFIX}{token}")
                return TokenVerification(valid=False, error="Token expired")

            return TokenVerification(valid=True, user_id=data.get("userId"))

        except Exception as e:
            logger.error("Subscription token verification failed", execution_id=execution_id, error=str(e))
            return TokenVerification(valid=False, error="Token verification failed")

    async def invalidate(self, execution_id: str) -> None:
        """Revoke every token of an execution. Errors are logged, never raised."""
        index_key = f"{EXECUTION_TOKENS_KEY_PREFIX}{execution_id}"
        try:
            tokens = await self.cache.client.smembers(index_key)
            keys = [f"{SUBSCRIPTION_TOKEN_KEY_PREFIX}{t}" for t in tokens]
            await self.cache.delete(*keys, index_key)
            logger.info("Subscription tokens invalidated", execution_id=execution_id, count=len(keys))
        except Exception as e:
            logger.error("Failed to invalidate subscription tokens", execution_id=execution_id, error=str(e))

    async def check_ownership(self, execution_id: str, user_id: str) -> bool:
        try:
            return await self.database.check_execution_ownership(execution_id, user_id)
        except Exception as e:
            logger.error("Execution ownership check failed", execution_id=execution_id, error=str(e))
            return False
