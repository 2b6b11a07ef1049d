"""Cache client abstraction with Redis and in-memory backends.

The quota service keeps its sliding-window records here, serialized as
JSON strings, so a single process can use the in-memory LRU and a fleet
can share Redis.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from account_guard.config.settings import CacheConfig


class CacheClient:
    """Cache abstraction that delegates to Redis or in-memory LRU backend."""

    def __init__(self, config: CacheConfig) -> None:
        """Initialize cache client with configuration.

        Args:
            config: Cache configuration with engine type and connection params.
        """
        self._config = config
        self._backend: CacheBackend | None = None
        self._connected = False

    async def connect(self) -> None:
        """Connect to the cache backend.

        Raises:
            ValueError: If cache engine type is invalid.
        """
        from account_guard.cache.memory import MemoryCache
        from account_guard.cache.redis import RedisCache

        engine = self._config.engine.lower()

        if engine == "redis":
            self._backend = RedisCache(self._config)
        elif engine == "memory":
            self._backend = MemoryCache(self._config, max_size=self._config.max_entries)
        else:
            msg = f"Unsupported cache engine: {engine}"
            raise ValueError(msg)

        await self._backend.connect()
        self._connected = True

    async def close(self) -> None:
        """Close the cache connection (idempotent)."""
        if self._backend is not None:
            await self._backend.close()
            self._backend = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Check if the cache is connected."""
        return self._connected and self._backend is not None

    async def get(self, key: str) -> str | None:
        """Get a value from the cache.

        Raises:
            RuntimeError: If not connected.
        """
        return await self._require().get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set a value in the cache.

        Args:
            key: Cache key.
            value: Value to store (string).
            ttl: Time-to-live in seconds. None = no expiry.

        Raises:
            RuntimeError: If not connected.
        """
        await self._require().set(key, value, ttl=ttl)

    async def delete(self, key: str) -> None:
        """Delete a key from the cache.

        Raises:
            RuntimeError: If not connected.
        """
        await self._require().delete(key)

    async def exists(self, key: str) -> bool:
        """Check if a key exists in the cache.

        Raises:
            RuntimeError: If not connected.
        """
        return await self._require().exists(key)

    async def keys(self, prefix: str = "") -> list[str]:
        """List live keys starting with *prefix*.

        Raises:
            RuntimeError: If not connected.
        """
        return await self._require().keys(prefix)

    async def flush(self) -> None:
        """Flush all keys from the cache (development/testing only).

        Raises:
            RuntimeError: If not connected.
        """
        await self._require().flush()

    def _require(self) -> CacheBackend:
        """Return the backend or raise RuntimeError if not connected."""
        if not self._connected or self._backend is None:
            msg = "Cache not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._backend


class CacheBackend(Protocol):
    """Protocol for cache backend implementations."""

    async def connect(self) -> None: ...
    async def close(self) -> None: ...
    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def exists(self, key: str) -> bool: ...
    async def keys(self, prefix: str = "") -> list[str]: ...
    async def flush(self) -> None: ...
