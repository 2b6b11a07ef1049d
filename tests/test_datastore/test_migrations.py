"""Tests for schema creation helpers."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from account_guard.datastore.migrations import drop_all_tables, run_auto_migrate

_EXPECTED_TABLES = {
    "api_keys",
    "api_key_usage",
    "devices",
    "device_activities",
    "audit_logs",
    "audit_checkpoints",
    "security_alerts",
    "incident_responses",
    "withdrawal_requests",
    "withdrawal_approvals",
    "whitelisted_addresses",
    "withdrawal_limits",
}


async def _table_names(engine) -> set[str]:
    async with engine.connect() as conn:
        result = await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
        return {row[0] for row in result.fetchall()}


class TestAutoMigrate:
    """Programmatic table creation and teardown."""

    async def test_creates_all_tables(self) -> None:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        await run_auto_migrate(engine)
        assert _EXPECTED_TABLES.issubset(await _table_names(engine))
        await engine.dispose()

    async def test_idempotent(self) -> None:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        await run_auto_migrate(engine)
        await run_auto_migrate(engine)
        await engine.dispose()

    async def test_drop_all_tables(self) -> None:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        await run_auto_migrate(engine)
        await drop_all_tables(engine)
        assert not (_EXPECTED_TABLES & await _table_names(engine))
        await engine.dispose()

    async def test_migrate_then_insert(self) -> None:
        from account_guard.engine.models import WithdrawalLimit

        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        await run_auto_migrate(engine)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with factory() as session:
            session.add(
                WithdrawalLimit(
                    user_id="u1",
                    daily_limit=Decimal("100"),
                    monthly_limit=Decimal("1000"),
                    requires_approval_above=Decimal("10"),
                    multi_sig_threshold=Decimal("50"),
                )
            )
            await session.commit()
            row = await session.get(WithdrawalLimit, "u1")
        assert row is not None
        assert row.daily_limit == 100
        await engine.dispose()
