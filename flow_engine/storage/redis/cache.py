"""
Redis-backed idempotency cache.

Shares cached responses across API processes. Values are stored as JSON
with SETEX so Redis expires them on its own.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from flow_engine.util.idempotency import DEFAULT_TTL_SECONDS, Compute

logger = logging.getLogger(__name__)


class RedisIdempotencyCache:
    """
    Idempotency cache keyed by scope and request key.

    The scope separates operations so the same client key used for a start
    and a submit never collides.
    """

    KEY_PREFIX = "flow:idem:"

    def __init__(self, client: redis.Redis, scope: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.client = client
        self.scope = scope
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{self.scope}:{key}"

    async def execute(self, key: Optional[str], compute: Compute) -> Any:
        """Return the cached value for key, or compute and cache it."""
        if not key:
            return await compute()

        redis_key = self._key(key)
        cached = await self.client.get(redis_key)
        if cached is not None:
            logger.debug(f"Idempotency hit for {redis_key}")
            return json.loads(cached)

        value = await compute()
        await self.client.setex(redis_key, self.ttl_seconds, json.dumps(value, default=str))
        return value
