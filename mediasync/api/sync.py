"""Sync verification, operation tracking and snapshot endpoints."""

from __future__ import annotations

import logging
import time
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from mediasync.api.deps import get_session, get_settings, get_store, get_tracker, require_admin
from mediasync.config import Settings
from mediasync.exceptions import OperationNotFoundError
from mediasync.models.operation import OperationStatus
from mediasync.schemas.sync import (
    OperationListResponse,
    OperationResponse,
    SnapshotRequest,
    SnapshotResponse,
    VerifyFixRequest,
    VerifyFixResponse,
    VerifyResponse,
)
from mediasync.services import reconcile_service
from mediasync.services.datetime_service import now_utc
from mediasync.services.operation_service import SyncOperationTracker
from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"], dependencies=[Depends(require_admin)])


def _verification_failed(report: reconcile_service.VerificationReport) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "success": False,
            "error": report.error,
            "message": "Sync verification failed",
            "verification": report.to_dict(),
        },
    )


@router.get("/verify", response_model=VerifyResponse)
async def verify_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[AssetStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> VerifyResponse | JSONResponse:
    """Compare store and mirror without writing anything."""
    started = time.monotonic()
    report = await reconcile_service.verify_integrity(
        session, store, page_size=settings.store_page_size
    )
    if report.error is not None:
        return _verification_failed(report)
    return VerifyResponse(
        success=True,
        verification=report.to_dict(),
        summary=report.summary(),
        processing_time_ms=int((time.monotonic() - started) * 1000),
        timestamp=now_utc().isoformat(),
    )


@router.post("/verify", response_model=VerifyFixResponse)
async def verify_and_fix_endpoint(
    body: VerifyFixRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    store: Annotated[AssetStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> VerifyFixResponse | JSONResponse:
    """Verify, then repair only what the flags ask for."""
    started = time.monotonic()
    report = await reconcile_service.verify_integrity(
        session, store, page_size=settings.store_page_size
    )
    if report.error is not None:
        return _verification_failed(report)

    fix_missing = body.auto_fix or body.fix_missing_in_database
    fix_conflicts = body.auto_fix or body.fix_conflicts
    fixes = reconcile_service.FixResults()
    if fix_missing or fix_conflicts:
        fixes = await reconcile_service.apply_fixes(
            session,
            store,
            report,
            fix_missing_in_database=fix_missing,
            fix_conflicts=fix_conflicts,
        )

    summary = report.summary()
    summary["is_perfectly_synced"] = report.is_perfectly_synced and not fixes.fix_errors
    summary["fixes"] = {
        "missing_assets_fixed": fixes.fixed_missing_in_database,
        "conflicts_fixed": fixes.fixed_conflicts,
        "fix_errors": len(fixes.fix_errors),
    }
    return VerifyFixResponse(
        success=True,
        verification=report.to_dict(),
        summary=summary,
        fixes_applied=fix_missing or fix_conflicts,
        fix_results=fixes.to_dict(),
        processing_time_ms=int((time.monotonic() - started) * 1000),
        timestamp=now_utc().isoformat(),
    )


# ── Operations ───────────────────────────────────────


@router.get("/operations", response_model=OperationListResponse)
async def list_operations_endpoint(
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
    active_only: bool = False,
) -> OperationListResponse:
    operations = await tracker.list_operations(limit=limit, active_only=active_only)
    return OperationListResponse(
        operations=[OperationResponse(**op.to_dict()) for op in operations],
        active_count=await tracker.count_active(),
    )


@router.get("/operations/{operation_id}", response_model=OperationResponse)
async def get_operation_endpoint(
    operation_id: str,
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
) -> OperationResponse:
    try:
        operation = await tracker.get_operation(operation_id)
    except OperationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Operation not found") from exc
    return OperationResponse(**operation.to_dict())


@router.post("/operations/{operation_id}/cancel", response_model=OperationResponse)
async def cancel_operation_endpoint(
    operation_id: str,
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
) -> OperationResponse:
    """Cancel a running operation; it stops at the next batch boundary."""
    try:
        operation = await tracker.cancel_operation(operation_id)
    except OperationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Operation not found") from exc
    if operation.status != OperationStatus.CANCELLED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Operation already {operation.status}",
        )
    logger.info("Operation %s cancelled by admin", operation_id)
    return OperationResponse(**operation.to_dict())


# ── Snapshots ────────────────────────────────────────


@router.post("/snapshots", response_model=SnapshotResponse, status_code=201)
async def create_snapshot_endpoint(
    body: SnapshotRequest,
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SnapshotResponse:
    snapshot = await tracker.create_snapshot(body.snapshot_type)
    await tracker.prune_snapshots(settings.snapshot_retention)
    return SnapshotResponse(**snapshot.to_dict())


@router.get("/snapshots", response_model=list[SnapshotResponse])
async def list_snapshots_endpoint(
    tracker: Annotated[SyncOperationTracker, Depends(get_tracker)],
    limit: Annotated[int, Query(ge=1, le=500)] = 24,
) -> list[SnapshotResponse]:
    snapshots = await tracker.list_snapshots(limit=limit)
    return [SnapshotResponse(**snapshot.to_dict()) for snapshot in snapshots]
