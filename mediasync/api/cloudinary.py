"""Asset store sync, cleanup queue, scheduler, media and webhook endpoints."""

from __future__ import annotations

import json
import logging
from functools import partial
from pathlib import PurePosixPath
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediasync.api.deps import (
    get_scheduler,
    get_session,
    get_settings,
    get_store,
    get_tracker,
    require_admin,
)
from mediasync.config import Settings
from mediasync.models.asset import ResourceType
from mediasync.models.operation import OperationSource
from mediasync.schemas.cloudinary import (
    CleanupRequest,
    MediaDeleteRequest,
    MediaDeleteResponse,
    SchedulerRequest,
    SyncFixRequest,
    SyncRequest,
)
from mediasync.services import jobs, media_service, mirror_service, reconcile_service
from mediasync.services.datetime_service import now_utc
from mediasync.services.operation_service import SyncOperationTracker
from mediasync.services.scheduler_service import RunOutcome, SyncScheduler
from mediasync.services.webhook_service import handle_notification
from mediasync.store.base import AssetStore, AssetStoreError
from mediasync.store.cloudinary import verify_notification_signature

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/cloudinary", tags=["cloudinary"], dependencies=[Depends(require_admin)]
)
webhook_router = APIRouter(prefix="/api/cloudinary", tags=["cloudinary"])

RECENT_QUEUE_ITEMS = 20


def _session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    return factory


def _already_running(job: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"success": False, "message": "already running", "job": job},
    )


def _scheduler_config(settings: Settings) -> dict[str, Any]:
    return {
        "sync_interval_minutes": settings.sync_interval_minutes,
        "cleanup_interval_minutes": settings.cleanup_interval_minutes,
        "cleanup_batch_size": settings.cleanup_batch_size,
        "cleanup_max_attempts": settings.cleanup_max_attempts,
        "run_lock_backend": settings.run_lock_backend,
    }


def _outcome_detail(outcome: RunOutcome) -> dict[str, Any]:
    return outcome.report.detail if outcome.report is not None else {}


# ── Sync ─────────────────────────────────────────────


@router.get("/sync")
async def sync_status_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> dict[str, Any]:
    """Mirror status: counts by sync status and the latest sync time."""
    counts = await mirror_service.count_by_status(session)
    last_synced = await mirror_service.latest_sync_time(session)
    return {
        "success": True,
        "data": {
            "total_assets": sum(counts.values()),
            "by_status": counts,
            "last_synced_at": last_synced.isoformat() if last_synced else None,
            "active_operations": await tracker.count_active(session),
            "scheduler_running": scheduler.is_running,
        },
    }


@router.post("/sync", response_model=None)
async def trigger_sync_endpoint(
    body: SyncRequest,
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[AssetStore, Depends(get_store)],
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any] | JSONResponse:
    """Full sync under the sync run-lock, or a single-asset sync when one is named."""
    if body.single_asset:
        single = await reconcile_service.sync_single_asset(
            session, store, body.single_asset, force=body.force
        )
        created = single.outcome == mirror_service.UpsertOutcome.CREATED
        updated = single.outcome == mirror_service.UpsertOutcome.UPDATED
        return {
            "success": single.success,
            "data": {
                "synced_items": int(created),
                "updated_items": int(updated),
                "asset": single.to_dict(),
            },
        }

    options = reconcile_service.SyncOptions(
        force=body.force,
        batch_size=body.batch_size or settings.sync_batch_size,
        folder_filter=body.folder_filter,
        resource_type_filter=body.resource_type_filter,
    )
    job = partial(
        jobs.run_full_sync,
        _session_factory(request),
        store,
        tracker,
        settings,
        options=options,
        triggered_by="admin",
    )
    outcome = await scheduler.trigger(jobs.SYNC_JOB, source=OperationSource.API, job=job)
    if not outcome.started:
        return _already_running(jobs.SYNC_JOB)
    detail = _outcome_detail(outcome)
    return {"success": bool(detail.get("success")), "data": detail}


# ── Cleanup queue ────────────────────────────────────


@router.get("/cleanup")
async def cleanup_status_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> dict[str, Any]:
    stats = await mirror_service.queue_stats(session)
    recent = await mirror_service.recent_queue_items(session, RECENT_QUEUE_ITEMS)
    return {
        "success": True,
        "stats": stats,
        "recent_items": [item.to_dict() for item in recent],
    }


@router.post("/cleanup", response_model=None)
async def process_cleanup_endpoint(
    body: CleanupRequest,
    request: Request,
    store: Annotated[AssetStore, Depends(get_store)],
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any] | JSONResponse:
    """Drain the queue under the cleanup run-lock."""
    job = partial(
        jobs.run_cleanup,
        _session_factory(request),
        store,
        tracker,
        settings,
        limit=body.limit,
        specific_id=body.specific_id,
        force_retry=body.force_retry,
    )
    outcome = await scheduler.trigger(jobs.CLEANUP_JOB, source=OperationSource.API, job=job)
    if not outcome.started:
        return _already_running(jobs.CLEANUP_JOB)
    detail = _outcome_detail(outcome)
    return {"success": True, "processed": detail.get("processed", 0), "summary": detail}


# ── Scheduler ────────────────────────────────────────


@router.get("/scheduler")
async def scheduler_status_endpoint(
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any]:
    return {"success": True, "stats": {**scheduler.status(), "config": _scheduler_config(settings)}}


@router.post("/scheduler", response_model=None)
async def scheduler_control_endpoint(
    body: SchedulerRequest,
    request: Request,
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any] | JSONResponse:
    """Inspect or control the scheduler."""
    message = ""
    result: dict[str, Any] | None = None
    if body.action == "start":
        if request.app.state.store is None:
            raise HTTPException(status_code=503, detail="Asset store is not configured")
        message = "Scheduler started" if scheduler.start() else "Scheduler already running"
    elif body.action == "stop":
        message = "Scheduler stopped" if scheduler.stop() else "Scheduler already stopped"
    elif body.action in ("force_cleanup", "force_sync"):
        job_name = jobs.CLEANUP_JOB if body.action == "force_cleanup" else jobs.SYNC_JOB
        get_store(request)
        outcome = await scheduler.trigger(job_name, source=OperationSource.MANUAL)
        if not outcome.started:
            return _already_running(job_name)
        result = _outcome_detail(outcome)
        message = f"Forced {job_name} run completed"
    else:
        message = "Scheduler status"

    response: dict[str, Any] = {
        "success": True,
        "message": message,
        "stats": {**scheduler.status(), "config": _scheduler_config(settings)},
    }
    if result is not None:
        response["result"] = result
    return response


# ── Sync fix ─────────────────────────────────────────


@router.get("/sync-fix")
async def sync_fix_diagnostic_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> dict[str, Any]:
    """Report soft-deleted rows that nothing will ever clean up."""
    orphans = await mirror_service.find_orphaned_deletions(session)
    stats = await mirror_service.queue_stats(session)
    return {
        "success": True,
        "diagnostic": {
            "scheduler_running": scheduler.is_running,
            "queue": stats,
            "orphaned_soft_deletes": len(orphans),
            "orphaned_public_ids": [record.public_id for record in orphans[:50]],
            "needs_fix": bool(orphans) or stats["failed"] > 0,
        },
    }


@router.post("/sync-fix", response_model=None)
async def sync_fix_endpoint(
    body: SyncFixRequest,
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any] | JSONResponse:
    """Re-queue orphaned soft deletes and optionally drain the queue."""
    requeued = await mirror_service.requeue_orphans(session)
    await session.commit()
    logger.info("Sync fix re-queued %d orphaned deletions", len(requeued))

    response: dict[str, Any] = {"success": True, "requeued": requeued}
    if body.process_queue:
        job = partial(
            jobs.run_cleanup,
            _session_factory(request),
            get_store(request),
            tracker,
            settings,
            limit=body.limit,
        )
        outcome = await scheduler.trigger(jobs.CLEANUP_JOB, source=OperationSource.API, job=job)
        response["cleanup"] = (
            _outcome_detail(outcome) if outcome.started else {"message": outcome.reason}
        )
    return response


# ── Media ────────────────────────────────────────────

MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10 MB per file
ALLOWED_UPLOAD_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "video/mp4",
        "video/webm",
        "video/ogg",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)


@router.get("/media")
async def list_media_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    folder: str | None = None,
    resource_type: ResourceType | None = None,
    search: Annotated[str | None, Query(max_length=200)] = None,
) -> dict[str, Any]:
    """Page through live mirror rows, newest first."""
    result = await media_service.list_media(
        session,
        page=page,
        limit=limit,
        folder=folder,
        resource_type=resource_type,
        search=search,
    )
    return {"success": True, "data": result.to_dict()}


@router.get("/upload")
async def upload_config_endpoint(
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any]:
    return {
        "success": True,
        "config": {
            "max_file_size": MAX_UPLOAD_SIZE,
            "allowed_file_types": sorted(ALLOWED_UPLOAD_TYPES),
            "cloud_name": settings.cloudinary_cloud_name,
        },
    }


@router.post("/upload", status_code=201)
async def upload_media_endpoint(
    file: UploadFile,
    session: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[AssetStore, Depends(get_store)],
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    folder: Annotated[str | None, Query(max_length=255)] = None,
    tags: Annotated[str | None, Query(description="Comma-separated tags")] = None,
) -> dict[str, Any]:
    """Upload one file to the store and record it in the mirror."""
    if file.content_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File type {file.content_type} not allowed",
        )
    content = await file.read()
    if len(content) > MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail=f"File too large: {file.filename}")
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    tag_list = [tag.strip() for tag in (tags or "").split(",") if tag.strip()]
    result = await media_service.upload_media(
        session,
        store,
        tracker,
        content,
        filename=PurePosixPath(file.filename or "upload").name,
        folder=folder,
        tags=tag_list,
    )
    return result.to_dict()


@router.delete("/media", response_model=MediaDeleteResponse)
async def delete_media_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[AssetStore, Depends(get_store)],
    public_ids: Annotated[str | None, Query(description="Comma-separated public ids")] = None,
    body: MediaDeleteRequest | None = None,
) -> MediaDeleteResponse:
    """Delete assets from the store, then their mirror rows."""
    ids = media_service.parse_public_ids(public_ids, body.public_ids if body else None)
    if not ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No public IDs provided for deletion",
        )
    result = await media_service.delete_media(session, store, ids)
    return MediaDeleteResponse(
        success=not result.failed,
        deleted=result.deleted,
        failed=result.to_dict()["failed"],
        message=f"Deleted {len(result.deleted)} of {len(ids)} assets",
    )


# ── Webhook ──────────────────────────────────────────


@webhook_router.post("/webhook", response_model=None)
async def webhook_endpoint(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[AssetStore, Depends(get_store)],
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> dict[str, Any] | JSONResponse:
    """Ingest a store notification. Signed with the API secret, not the admin token."""
    raw = await request.body()
    if settings.webhook_require_signature and not verify_notification_signature(
        raw,
        request.headers.get("X-Cld-Timestamp", ""),
        request.headers.get("X-Cld-Signature", ""),
        settings.cloudinary_api_secret,
        max_age_seconds=settings.webhook_max_age_seconds,
    ):
        logger.warning("Rejected webhook with missing or invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")

    try:
        result = await handle_notification(session, store, tracker, payload)
    except (AssetStoreError, SQLAlchemyError) as exc:
        # Answer 200 so the store does not keep redelivering a notification we cannot apply.
        await session.rollback()
        logger.exception("Webhook processing failed")
        return {
            "success": False,
            "error": str(exc),
            "timestamp": now_utc().isoformat(),
        }
    return {**result.to_dict(), "timestamp": now_utc().isoformat()}
