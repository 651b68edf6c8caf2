"""
Per-instance mutual exclusion.

Every operation that mutates an instance (traversal, resumption, timeout
handling) runs while holding that instance's lock, so at most one of them
is in flight per instance. Distinct instances never contend.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator


class InstanceLocks:
    """Lazily created asyncio locks keyed by instance id."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, instance_id: str) -> AsyncGenerator[None, None]:
        """
        Hold the instance's lock for the duration of the block.

        Usage:
            async with locks.hold(instance_id):
                # mutate the instance
        """
        async with self.get(instance_id):
            yield

    def discard(self, instance_id: str) -> None:
        """
        Forget the lock of a terminated instance.

        Tasks already queued on the old lock still acquire it; they must
        re-check the instance after acquiring and will find it gone.
        """
        self._locks.pop(instance_id, None)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)
