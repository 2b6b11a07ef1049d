"""Shared test fixtures for the account-guard test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from account_guard.config.settings import CacheEngine, DatabaseEngine

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000

ADMIN_KEY = "test-admin-key"


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> None:
        self._now += ms

    def set(self, ms: int) -> None:
        self._now = ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app_config():
    """Provide a test AppConfig with safe defaults."""
    from account_guard.config.settings import (
        AppConfig,
        AuditConfig,
        CacheConfig,
        DatabaseConfig,
        TaskConfig,
    )

    return AppConfig(
        debug=True,
        admin_key=ADMIN_KEY,
        db=DatabaseConfig(
            engine=DatabaseEngine.SQLITE,
            dsn="sqlite+aiosqlite:///:memory:",
        ),
        cache=CacheConfig(engine=CacheEngine.MEMORY),
        audit=AuditConfig(export_signing_key="test-signing-key"),
        task=TaskConfig(enabled=False),
    )


@pytest.fixture
async def engine(app_config, clock) -> AsyncIterator:
    """An initialized GuardEngine on in-memory SQLite and the fake clock."""
    from account_guard.engine.client import GuardEngine

    guard = GuardEngine(app_config, clock=clock)
    await guard.initialize()
    yield guard
    await guard.close()


@pytest.fixture
async def async_engine(app_config):
    """Create an async SQLAlchemy engine for testing (in-memory SQLite)."""
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(app_config.db.dsn, echo=False)
    yield engine
    await engine.dispose()


@pytest.fixture
def test_client(app_config, clock) -> Iterator:
    """A FastAPI TestClient with the app started on the test config."""
    from fastapi.testclient import TestClient

    from account_guard.api.app import create_app

    app = create_app(config=app_config, clock=clock)
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client
