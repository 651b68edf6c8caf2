"""Shared utilities."""

from flow_engine.util.idempotency import DEFAULT_TTL_SECONDS, IdempotencyCache

__all__ = ["DEFAULT_TTL_SECONDS", "IdempotencyCache"]
