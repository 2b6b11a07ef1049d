"""Schema creation helpers.

Tables are created from the ORM metadata at engine start-up; this keeps
development and test databases in step with the models.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from account_guard.engine.models.base import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


async def run_auto_migrate(engine: AsyncEngine) -> None:
    """Create all tables defined by ORM models.

    Args:
        engine: The async SQLAlchemy engine to migrate.
    """
    # Import all models to register them with Base.metadata
    import account_guard.engine.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables(engine: AsyncEngine) -> None:
    """Drop all tables (test/dev utility only — never use in production!).

    Args:
        engine: The async SQLAlchemy engine.
    """
    import account_guard.engine.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
