"""Database engine, session factory and schema bootstrap."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mediasync.models.base import Base

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from mediasync.config import Settings

# Cleanup claims and progress updates come from independent sessions; give
# SQLite writers time to wait for each other instead of failing fast.
_SQLITE_BUSY_TIMEOUT_MS = 5000


def _sqlite_path(database_url: str) -> Path | None:
    if not database_url.startswith("sqlite") or "///" not in database_url:
        return None
    raw = database_url.split("///", 1)[-1]
    if not raw or raw == ":memory:":
        return None
    return Path(raw)


def _configure_sqlite(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple. For file-backed SQLite the parent
    directory is created on demand.
    """
    db_path = _sqlite_path(settings.database_url)
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
    )
    if settings.database_url.startswith("sqlite"):
        _configure_sqlite(engine)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


async def init_schema(engine: AsyncEngine) -> None:
    """Create all mirror, queue, operation and lock tables if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Yield an async database session."""
    async with session_factory() as session:
        yield session
