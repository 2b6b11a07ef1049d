"""In-memory LRU cache implementation."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from account_guard.config.settings import CacheConfig


class MemoryCache:
    """In-memory LRU cache with TTL support, for single-process deployments."""

    def __init__(self, config: CacheConfig, max_size: int = 10000) -> None:
        """Initialize in-memory cache.

        Args:
            config: Cache configuration; supplies the pinned key prefixes.
            max_size: Maximum number of keys to store before evicting LRU.
        """
        self._config = config
        self._max_size = max_size
        self._pinned = tuple(config.pinned_prefixes)
        # {key: (value, expiry_timestamp_or_none)}
        self._cache: OrderedDict[str, tuple[str, float | None]] = OrderedDict()

    async def connect(self) -> None:  # noqa: ASYNC910
        """Connect (no-op for in-memory)."""

    async def close(self) -> None:  # noqa: ASYNC910
        """Close and clear the cache."""
        self._cache.clear()

    async def get(self, key: str) -> str | None:  # noqa: ASYNC910
        """Get a value, or None if not found/expired."""
        if not self._alive(key):
            return None
        value, _ = self._cache[key]
        self._cache.move_to_end(key)
        return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:  # noqa: ASYNC910
        """Set a value. ``ttl`` is in seconds; None = no expiry."""
        expiry = None if ttl is None else time.time() + ttl

        if key in self._cache:
            del self._cache[key]
        self._cache[key] = (value, expiry)

        if len(self._cache) > self._max_size:
            self._evict_one()

    async def delete(self, key: str) -> None:  # noqa: ASYNC910
        """Delete a key."""
        self._cache.pop(key, None)

    async def exists(self, key: str) -> bool:  # noqa: ASYNC910
        """Check if a key exists and is not expired."""
        return self._alive(key)

    async def keys(self, prefix: str = "") -> list[str]:  # noqa: ASYNC910
        """List live keys starting with *prefix*."""
        return [k for k in list(self._cache) if k.startswith(prefix) and self._alive(k)]

    async def flush(self) -> None:  # noqa: ASYNC910
        """Clear all keys from the cache."""
        self._cache.clear()

    def _evict_one(self) -> None:
        """Drop the least recently used unpinned key.

        Pinned keys are never evicted for capacity, so the cache may grow
        past max_size when it holds nothing else.
        """
        for key in self._cache:
            if not key.startswith(self._pinned):
                del self._cache[key]
                return

    def _alive(self, key: str) -> bool:
        """Evict *key* if expired; return whether it is still present."""
        entry = self._cache.get(key)
        if entry is None:
            return False
        _, expiry = entry
        if expiry is not None and time.time() > expiry:
            del self._cache[key]
            return False
        return True
