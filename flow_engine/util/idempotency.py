"""
Keyed response cache for idempotent HTTP requests.

A request carrying an Idempotency-Key runs once; repeats within the TTL
get the first response back without touching the engine again.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

DEFAULT_TTL_SECONDS = 600
DEFAULT_MAX_ENTRIES = 10_000

Compute = Callable[[], Awaitable[Any]]


@dataclass
class _Entry:
    value: Any
    expires_at: float


class IdempotencyCache:
    """
    In-process idempotency cache.

    Entries share one TTL, so insertion order is expiry order: every insert
    drops expired entries from the front, and the oldest entries are evicted
    once ``max_entries`` is reached.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._store: OrderedDict[str, _Entry] = OrderedDict()

    async def execute(self, key: Optional[str], compute: Compute) -> Any:
        """Return the cached value for key, or compute and cache it."""
        if not key:
            return await compute()

        entry = self._store.get(key)
        if entry is not None and entry.expires_at >= self._clock():
            return entry.value

        value = await compute()
        self._insert(key, value)
        return value

    def _insert(self, key: str, value: Any) -> None:
        now = self._clock()
        self._store.pop(key, None)
        while self._store:
            oldest = next(iter(self._store.values()))
            if oldest.expires_at >= now and len(self._store) < self.max_entries:
                break
            self._store.popitem(last=False)
        self._store[key] = _Entry(value=value, expires_at=now + self.ttl_seconds)

    def __len__(self) -> int:
        return len(self._store)
