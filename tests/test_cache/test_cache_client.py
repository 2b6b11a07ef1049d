"""Tests for CacheClient abstraction layer."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from account_guard.cache.client import CacheClient
from account_guard.cache.memory import MemoryCache
from account_guard.config.settings import CacheConfig, CacheEngine


class TestCacheClient:
    """Cache client with the in-memory backend."""

    async def test_init(self) -> None:  # noqa: ASYNC910
        client = CacheClient(CacheConfig(engine=CacheEngine.MEMORY))
        assert not client.is_connected

    async def test_connect_memory_backend(self) -> None:
        client = CacheClient(CacheConfig(engine=CacheEngine.MEMORY, max_entries=50))
        await client.connect()
        assert client.is_connected
        assert isinstance(client._backend, MemoryCache)
        assert client._backend._max_size == 50
        await client.close()
        assert not client.is_connected

    async def test_close_idempotent(self) -> None:
        client = CacheClient(CacheConfig(engine=CacheEngine.MEMORY))
        await client.connect()
        await client.close()
        await client.close()

    async def test_crud_and_keys(self) -> None:
        client = CacheClient(CacheConfig(engine=CacheEngine.MEMORY))
        await client.connect()

        await client.set("rl:x", "1", ttl=30)
        assert await client.get("rl:x") == "1"
        assert await client.exists("rl:x")
        assert await client.keys("rl:") == ["rl:x"]
        await client.delete("rl:x")
        assert await client.get("rl:x") is None

        await client.set("a", "1")
        await client.flush()
        assert await client.keys() == []
        await client.close()

    async def test_operations_before_connect_raise(self) -> None:
        client = CacheClient(CacheConfig(engine=CacheEngine.MEMORY))

        with pytest.raises(RuntimeError, match="not connected"):
            await client.get("key1")
        with pytest.raises(RuntimeError, match="not connected"):
            await client.set("key1", "value1")
        with pytest.raises(RuntimeError, match="not connected"):
            await client.keys()
        with pytest.raises(RuntimeError, match="not connected"):
            await client.flush()

    async def test_connect_redis_backend(self) -> None:
        """The Redis backend is selected and pinged on connect."""
        client = CacheClient(CacheConfig(engine=CacheEngine.REDIS))
        fake_redis = AsyncMock()
        with patch("account_guard.cache.redis.Redis.from_url", return_value=fake_redis):
            await client.connect()
        fake_redis.ping.assert_awaited_once()
        assert client.is_connected
        await client.close()
        fake_redis.aclose.assert_awaited_once()

    async def test_redis_unreachable(self) -> None:
        client = CacheClient(CacheConfig(engine=CacheEngine.REDIS))
        fake_redis = AsyncMock()
        fake_redis.ping.side_effect = OSError("refused")
        with (
            patch("account_guard.cache.redis.Redis.from_url", return_value=fake_redis),
            pytest.raises(ConnectionError, match="Failed to connect"),
        ):
            await client.connect()
        assert not client.is_connected
