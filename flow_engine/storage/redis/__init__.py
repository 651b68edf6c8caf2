"""Redis connection and shared idempotency cache."""

from flow_engine.storage.redis.cache import RedisIdempotencyCache
from flow_engine.storage.redis.connection import RedisConnection

__all__ = ["RedisConnection", "RedisIdempotencyCache"]
