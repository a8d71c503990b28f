"""Shared test fixtures for the media sync service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mediasync.config import Settings
from mediasync.database import create_engine, init_schema
from mediasync.main import create_app, init_runtime, shutdown_runtime
from mediasync.services.operation_service import SyncOperationTracker
from tests._fakes import FakeAssetStore, FakeClock

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

    from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)

TEST_ADMIN_TOKEN = "test-admin-token-with-at-least-32-characters"
TEST_API_SECRET = "test-api-secret"
ADMIN_HEADERS = {"Authorization": f"Bearer {TEST_ADMIN_TOKEN}"}


@asynccontextmanager
async def create_test_client(
    settings: Settings, store: AssetStore | None = None
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Runs the lifespan work by hand because ASGITransport does not trigger it.
    The app is reachable as ``client.app`` for tests that need its state.
    """
    app = create_app(settings, store=store)
    settings.validate_runtime_security()
    await init_runtime(app, settings)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        ac.app = app  # type: ignore[attr-defined]
        yield ac

    await shutdown_runtime(app)


def app_of(client: AsyncClient) -> FastAPI:
    app: FastAPI = client.app  # type: ignore[attr-defined]
    return app


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        admin_api_token=TEST_ADMIN_TOKEN,
        cloudinary_cloud_name="demo",
        cloudinary_api_key="key",
        cloudinary_api_secret=TEST_API_SECRET,
        sync_batch_size=2,
        cleanup_batch_size=10,
        cleanup_max_attempts=3,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _ = create_engine(test_settings)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(session_factory: async_sessionmaker[AsyncSession]) -> SyncOperationTracker:
    return SyncOperationTracker(session_factory)


@pytest.fixture
def fake_store() -> FakeAssetStore:
    return FakeAssetStore()
