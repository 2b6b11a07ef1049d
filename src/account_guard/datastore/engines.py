"""Database engine factories for the guard's durable store.

PostgreSQL goes through asyncpg with a sized connection pool. SQLite goes
through aiosqlite; an in-memory database is pinned to one shared connection
so every session sees the same ledger, and foreign keys are switched on so
withdrawal approvals follow their request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from account_guard.config.settings import DatabaseEngine

if TYPE_CHECKING:
    from account_guard.config.settings import DatabaseConfig

_MEMORY_MARKERS = (":memory:", "mode=memory")


def is_memory_dsn(dsn: str) -> bool:
    """True if *dsn* names an in-memory SQLite database."""
    return any(marker in dsn for marker in _MEMORY_MARKERS)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create an async SQLAlchemy engine from database configuration.

    Args:
        config: Database configuration with DSN, pool settings, etc.

    Returns:
        A configured ``AsyncEngine`` ready for use.
    """
    kwargs: dict[str, Any] = {"echo": config.debug_sql}

    if config.engine == DatabaseEngine.SQLITE:
        if is_memory_dsn(config.dsn):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_async_engine(config.dsn, **kwargs)
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    kwargs["pool_size"] = config.max_idle_connections
    kwargs["max_overflow"] = config.max_open_connections - config.max_idle_connections
    kwargs["pool_pre_ping"] = True
    return create_async_engine(config.dsn, **kwargs)
