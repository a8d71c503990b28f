"""Shared API dependencies: settings, DB session, store, tracker, scheduler, admin auth."""

from __future__ import annotations

import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from mediasync.config import Settings
from mediasync.services.operation_service import SyncOperationTracker
from mediasync.services.scheduler_service import SyncScheduler
from mediasync.store.base import AssetStore

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_store(request: Request) -> AssetStore:
    """Get the asset store client. Raises 503 when credentials are missing."""
    store: AssetStore | None = request.app.state.store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Asset store is not configured",
        )
    return store


def get_tracker(request: Request) -> SyncOperationTracker:
    tracker: SyncOperationTracker = request.app.state.tracker
    return tracker


def get_scheduler(request: Request) -> SyncScheduler:
    scheduler: SyncScheduler = request.app.state.scheduler
    return scheduler


async def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> str:
    """Require the admin bearer token. Raises 401 without one and 403 for a wrong one."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(
        credentials.credentials.encode(), settings.admin_api_token.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return "admin"
