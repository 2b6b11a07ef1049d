"""Per-key asyncio locks.

Mutation of a logical entity (an API key, a rate-limit record, a device,
a withdrawal request) is serialized by locking its key; unrelated keys
proceed concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class KeyedLock:
    """Registry of ``asyncio.Lock`` objects keyed by string.

    Usage::

        locks = KeyedLock()
        async with locks.hold("wd_123"):
            ...

    Lock objects are reference-counted and dropped once no task holds or
    waits on them, so the registry does not grow with the key space.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        """Whether *key* is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Acquire the lock for *key* for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]
