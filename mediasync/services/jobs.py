"""Job bodies shared by scheduled ticks and manual triggers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mediasync.services import cleanup_service, reconcile_service
from mediasync.services.cleanup_service import CleanupPolicy
from mediasync.services.datetime_service import now_utc
from mediasync.services.scheduler_service import JobReport, SyncScheduler

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from mediasync.config import Settings
    from mediasync.services.lock_service import LockProvider
    from mediasync.services.operation_service import SyncOperationTracker
    from mediasync.services.reconcile_service import SyncOptions
    from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)

SYNC_JOB = "sync"
CLEANUP_JOB = "cleanup"


async def run_full_sync(
    session_factory: async_sessionmaker[AsyncSession],
    store: AssetStore,
    tracker: SyncOperationTracker,
    settings: Settings,
    source: str,
    options: SyncOptions | None = None,
    triggered_by: str | None = None,
) -> JobReport:
    """Full reconcile followed by pruning of old operation rows."""
    if options is None:
        options = reconcile_service.SyncOptions(batch_size=settings.sync_batch_size)
    async with session_factory() as session:
        result = await reconcile_service.full_sync(
            session,
            store,
            tracker,
            options,
            source=source,
            triggered_by=triggered_by,
            page_size=settings.store_page_size,
        )
    await tracker.prune_operations(settings.operation_retention_days)
    return JobReport(
        processed=result.synced_items + result.updated_items + result.unchanged_items,
        failed=result.failed_items,
        detail=result.to_dict(),
    )


async def run_cleanup(
    session_factory: async_sessionmaker[AsyncSession],
    store: AssetStore,
    tracker: SyncOperationTracker,
    settings: Settings,
    source: str,
    *,
    limit: int | None = None,
    specific_id: int | None = None,
    force_retry: bool = False,
    clock: Callable[[], datetime] = now_utc,
) -> JobReport:
    async with session_factory() as session:
        summary = await cleanup_service.process_cleanup_queue(
            session,
            store,
            limit=limit or settings.cleanup_batch_size,
            specific_id=specific_id,
            force_retry=force_retry,
            policy=CleanupPolicy.from_settings(settings),
            tracker=tracker,
            source=source,
            clock=clock,
        )
    return JobReport(
        processed=summary.succeeded,
        failed=summary.processed - summary.succeeded,
        detail=summary.to_dict(),
    )


def build_scheduler(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    store: AssetStore | None,
    tracker: SyncOperationTracker,
    lock_provider: LockProvider,
    **kwargs: Any,
) -> SyncScheduler:
    """Wire the sync and cleanup jobs. Extra kwargs (clock, sleep) go to the scheduler."""

    def _require_store() -> AssetStore:
        if store is None:
            raise RuntimeError("Asset store is not configured")
        return store

    async def sync_job(source: str) -> JobReport:
        return await run_full_sync(session_factory, _require_store(), tracker, settings, source)

    async def cleanup_job(source: str) -> JobReport:
        return await run_cleanup(session_factory, _require_store(), tracker, settings, source)

    jobs: dict[str, tuple[Callable[[str], Awaitable[JobReport]], float]] = {
        SYNC_JOB: (sync_job, settings.sync_interval_minutes * 60),
        CLEANUP_JOB: (cleanup_job, settings.cleanup_interval_minutes * 60),
    }
    return SyncScheduler(jobs, lock_provider, **kwargs)
