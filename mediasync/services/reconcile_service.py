"""Reconciliation between the asset store listing and the metadata mirror."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from mediasync.models.operation import OperationSource, OperationStatus, OperationType
from mediasync.services import mirror_service
from mediasync.services.datetime_service import now_utc
from mediasync.services.mirror_service import UpsertOutcome
from mediasync.store.base import AssetNotFoundError, AssetStoreError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

    from mediasync.models.asset import AssetRecord
    from mediasync.services.operation_service import SyncOperationTracker
    from mediasync.store.base import AssetDescriptor, AssetStore

logger = logging.getLogger(__name__)


class ConflictKind(StrEnum):
    MISSING_IN_CLOUDINARY = "missing_in_cloudinary"
    VERSION_MISMATCH = "version_mismatch"


@dataclass
class SyncConflict:
    """A live mirror row that disagrees with the store."""

    public_id: str
    kind: ConflictKind
    issue: str
    cloudinary_data: dict[str, Any] | None = None
    database_data: dict[str, Any] | None = None


@dataclass
class VerificationReport:
    """Read-only comparison of store and mirror."""

    cloudinary_count: int = 0
    database_count: int = 0
    missing_in_database: list[str] = field(default_factory=list)
    missing_in_cloudinary: list[str] = field(default_factory=list)
    sync_conflicts: list[SyncConflict] = field(default_factory=list)
    pending_deletion: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    error: str | None = None
    descriptors: dict[str, AssetDescriptor] = field(default_factory=dict, repr=False)

    @property
    def success(self) -> bool:
        return self.error is None and not self.sync_conflicts

    @property
    def is_perfectly_synced(self) -> bool:
        return self.success and not self.missing_in_database and not self.missing_in_cloudinary

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cloudinary_count": self.cloudinary_count,
            "database_count": self.database_count,
            "missing_in_database": list(self.missing_in_database),
            "missing_in_cloudinary": list(self.missing_in_cloudinary),
            "sync_conflicts": [asdict(conflict) for conflict in self.sync_conflicts],
            "pending_deletion": list(self.pending_deletion),
            "recommendations": list(self.recommendations),
            "error": self.error,
        }

    def summary(self) -> dict[str, Any]:
        return {
            "total_cloudinary_assets": self.cloudinary_count,
            "total_database_assets": self.database_count,
            "missing_in_database": len(self.missing_in_database),
            "missing_in_cloudinary": len(self.missing_in_cloudinary),
            "sync_conflicts": len(self.sync_conflicts),
            "is_perfectly_synced": self.is_perfectly_synced,
        }


@dataclass
class SyncOptions:
    force: bool = False
    batch_size: int = 100
    folder_filter: str | None = None
    resource_type_filter: str | None = None


@dataclass
class SyncResult:
    """Outcome of a full sync. Partial results carry their errors."""

    success: bool = True
    operation_id: str | None = None
    cloudinary_count: int = 0
    synced_items: int = 0
    updated_items: int = 0
    unchanged_items: int = 0
    skipped_items: int = 0
    failed_items: int = 0
    missing_in_cloudinary: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SingleSyncResult:
    public_id: str
    success: bool
    outcome: UpsertOutcome | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "public_id": self.public_id,
            "success": self.success,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
        }


@dataclass
class FixResults:
    fixed_missing_in_database: int = 0
    fixed_conflicts: int = 0
    soft_deleted: list[str] = field(default_factory=list)
    fix_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _descriptor_data(descriptor: AssetDescriptor) -> dict[str, Any]:
    return {
        "version": descriptor.version,
        "signature": descriptor.signature,
        "bytes": descriptor.bytes,
        "tags": sorted(descriptor.tags),
    }


def _record_data(record: AssetRecord) -> dict[str, Any]:
    return {
        "version": record.version,
        "signature": record.signature,
        "bytes": record.file_size,
        "tags": sorted(record.tags or []),
    }


def classify(
    store_assets: Mapping[str, AssetDescriptor],
    live_rows: Mapping[str, AssetRecord],
    soft_deleted: set[str] | frozenset[str] = frozenset(),
) -> VerificationReport:
    """Compare the two sides without touching either.

    Store assets whose mirror row is soft-deleted are waiting for cleanup and
    are reported as ``pending_deletion`` rather than missing.
    """
    report = VerificationReport(
        cloudinary_count=len(store_assets),
        database_count=len(live_rows),
        descriptors=dict(store_assets),
    )
    for public_id, descriptor in store_assets.items():
        record = live_rows.get(public_id)
        if record is None:
            if public_id in soft_deleted:
                report.pending_deletion.append(public_id)
            else:
                report.missing_in_database.append(public_id)
        elif mirror_service.has_changed(record, descriptor):
            report.sync_conflicts.append(
                SyncConflict(
                    public_id=public_id,
                    kind=ConflictKind.VERSION_MISMATCH,
                    issue="Version mismatch between Cloudinary and database",
                    cloudinary_data=_descriptor_data(descriptor),
                    database_data=_record_data(record),
                )
            )
    for public_id, record in live_rows.items():
        if public_id not in store_assets:
            report.missing_in_cloudinary.append(public_id)
            report.sync_conflicts.append(
                SyncConflict(
                    public_id=public_id,
                    kind=ConflictKind.MISSING_IN_CLOUDINARY,
                    issue="Asset exists in database but not in Cloudinary",
                    database_data=_record_data(record),
                )
            )
    report.recommendations = _recommendations(report)
    return report


def _recommendations(report: VerificationReport) -> list[str]:
    version_conflicts = sum(
        1 for conflict in report.sync_conflicts if conflict.kind == ConflictKind.VERSION_MISMATCH
    )
    recs: list[str] = []
    if report.missing_in_database:
        recs.append(
            f"{len(report.missing_in_database)} assets found in Cloudinary but missing in "
            "database. Run sync to import them."
        )
    if report.missing_in_cloudinary:
        recs.append(
            f"{len(report.missing_in_cloudinary)} assets found in database but missing in "
            "Cloudinary. Fix conflicts to remove the orphaned records."
        )
    if version_conflicts:
        recs.append(f"{version_conflicts} assets have version conflicts. Run sync to resolve them.")
    if not recs:
        recs.append("Perfect sync: all assets are properly synchronized.")
    return recs


async def fetch_store_listing(
    store: AssetStore,
    *,
    page_size: int = 500,
    resource_type: str | None = None,
    folder: str | None = None,
) -> dict[str, AssetDescriptor]:
    """Page through the whole store listing."""
    assets: dict[str, AssetDescriptor] = {}
    cursor: str | None = None
    while True:
        page = await store.list_assets(
            cursor, page_size, resource_type=resource_type, folder=folder
        )
        for descriptor in page.items:
            assets[descriptor.public_id] = descriptor
        cursor = page.next_cursor
        if not cursor:
            return assets


async def verify_integrity(
    session: AsyncSession, store: AssetStore, *, page_size: int = 500
) -> VerificationReport:
    """Dry-run comparison. Nothing is written on either side."""
    logger.info("Starting sync integrity verification")
    try:
        store_assets = await fetch_store_listing(store, page_size=page_size)
    except (AssetStoreError, ValueError) as exc:
        logger.error("Verification aborted: store listing failed: %s", exc)
        report = VerificationReport(error=str(exc))
        report.recommendations = [f"Verification failed: {exc}"]
        return report

    live_rows = await mirror_service.load_live_assets(session)
    soft_deleted = await mirror_service.soft_deleted_public_ids(session)
    report = classify(store_assets, live_rows, soft_deleted)
    logger.info(
        "Verification done: store=%d mirror=%d missing_db=%d missing_store=%d conflicts=%d",
        report.cloudinary_count,
        report.database_count,
        len(report.missing_in_database),
        len(report.missing_in_cloudinary),
        len(report.sync_conflicts),
    )
    return report


async def _apply_batch(
    session: AsyncSession,
    batch: list[AssetDescriptor],
    result: SyncResult,
    *,
    force: bool,
) -> None:
    now = now_utc()
    try:
        outcomes = [
            await mirror_service.upsert_from_descriptor(session, descriptor, force=force, now=now)
            for descriptor in batch
        ]
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        ids = ", ".join(descriptor.public_id for descriptor in batch[:5])
        logger.error("Sync batch failed (%d items starting %s): %s", len(batch), ids, exc)
        result.failed_items += len(batch)
        result.errors.append(f"Batch of {len(batch)} items failed: {exc}")
        return
    for outcome in outcomes:
        if outcome == UpsertOutcome.CREATED:
            result.synced_items += 1
        elif outcome == UpsertOutcome.UPDATED:
            result.updated_items += 1
        elif outcome == UpsertOutcome.SKIPPED:
            result.skipped_items += 1
        else:
            result.unchanged_items += 1


async def full_sync(
    session: AsyncSession,
    store: AssetStore,
    tracker: SyncOperationTracker,
    options: SyncOptions | None = None,
    *,
    source: str = OperationSource.MANUAL,
    triggered_by: str | None = None,
    page_size: int = 500,
) -> SyncResult:
    """Import and refresh store assets into the mirror.

    Each batch commits on its own. Cancellation is checked before every listing
    call and between batches. Unexpected errors fail the operation and propagate.
    Mirror rows missing from the store are reported, never deleted.
    """
    options = options or SyncOptions()
    started = time.monotonic()
    result = SyncResult()
    result.operation_id = await tracker.create_operation(
        OperationType.FULL_SYNC,
        source=source,
        triggered_by=triggered_by,
        operation_data=asdict(options),
    )
    operation_id = result.operation_id
    logger.info("Full sync %s starting (batch_size=%d)", operation_id, options.batch_size)

    seen: set[str] = set()
    cursor: str | None = None
    pending: list[AssetDescriptor] = []
    total_hint = 0

    async def flush_batch() -> bool:
        """Commit the pending batch; False when the run was cancelled."""
        if await tracker.is_cancelled(operation_id):
            result.cancelled = True
            return False
        batch = pending[: options.batch_size]
        del pending[: options.batch_size]
        await _apply_batch(session, batch, result, force=options.force)
        done = (
            result.synced_items
            + result.updated_items
            + result.unchanged_items
            + result.skipped_items
        )
        await tracker.update_progress(
            operation_id,
            processed=done,
            failed=result.failed_items,
            total=max(total_hint, len(seen)),
        )
        logger.debug("Full sync %s: %d/%d items", operation_id, done, max(total_hint, len(seen)))
        return True

    try:
        while True:
            if await tracker.is_cancelled(operation_id):
                result.cancelled = True
                break
            page = await store.list_assets(
                cursor,
                page_size,
                resource_type=options.resource_type_filter,
                folder=options.folder_filter,
            )
            if page.total_count is not None:
                total_hint = page.total_count
            for descriptor in page.items:
                if descriptor.public_id in seen:
                    continue
                seen.add(descriptor.public_id)
                pending.append(descriptor)
            while len(pending) >= options.batch_size:
                if not await flush_batch():
                    break
            if result.cancelled:
                break
            cursor = page.next_cursor
            if not cursor:
                break
        while pending and not result.cancelled:
            if not await flush_batch():
                break
    except (AssetStoreError, ValueError) as exc:
        logger.error("Full sync %s aborted while listing the store: %s", operation_id, exc)
        result.success = False
        result.errors.append(f"Store listing failed: {exc}")
        result.cloudinary_count = len(seen)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        await tracker.complete_operation(
            operation_id, OperationStatus.FAILED, {"errors": result.errors}
        )
        return result
    except Exception as exc:
        logger.exception("Full sync %s failed with an internal error", operation_id)
        result.success = False
        result.errors.append(f"Internal error: {exc.__class__.__name__}: {exc}")
        await tracker.complete_operation(
            operation_id, OperationStatus.FAILED, {"errors": result.errors}
        )
        raise

    result.cloudinary_count = len(seen)
    result.duration_ms = int((time.monotonic() - started) * 1000)
    if result.cancelled:
        logger.info("Full sync %s cancelled after %d items", operation_id, len(seen) - len(pending))
        result.success = False
        result.errors.append("Operation cancelled")
        return result

    # A filtered listing cannot say anything about rows outside the filter.
    if not options.folder_filter and not options.resource_type_filter:
        live = await mirror_service.load_live_assets(session)
        result.missing_in_cloudinary = sorted(set(live) - seen)

    result.success = result.failed_items == 0
    await tracker.complete_operation(
        operation_id,
        OperationStatus.COMPLETED,
        {"errors": result.errors} if result.errors else None,
    )
    logger.info(
        "Full sync %s done: created=%d updated=%d unchanged=%d failed=%d missing_in_store=%d",
        operation_id,
        result.synced_items,
        result.updated_items,
        result.unchanged_items,
        result.failed_items,
        len(result.missing_in_cloudinary),
    )
    return result


async def sync_single_asset(
    session: AsyncSession,
    store: AssetStore,
    public_id: str,
    *,
    resource_type: str | None = None,
    force: bool = True,
    revive: bool = False,
) -> SingleSyncResult:
    """Fetch one asset from the store and upsert its mirror row."""
    try:
        descriptor = await store.get_asset(public_id, resource_type)
    except AssetNotFoundError:
        return SingleSyncResult(public_id, success=False, error="Asset not found in Cloudinary")
    except AssetStoreError as exc:
        logger.warning("Single-asset sync of %s failed: %s", public_id, exc)
        return SingleSyncResult(public_id, success=False, error=str(exc))

    outcome = await mirror_service.upsert_from_descriptor(
        session, descriptor, force=force, revive=revive
    )
    await session.commit()
    logger.info("Single-asset sync of %s: %s", public_id, outcome)
    return SingleSyncResult(public_id, success=outcome != UpsertOutcome.SKIPPED, outcome=outcome)


async def apply_fixes(
    session: AsyncSession,
    store: AssetStore,
    report: VerificationReport,
    *,
    fix_missing_in_database: bool = False,
    fix_conflicts: bool = False,
    triggered_by: str = "sync_verify",
) -> FixResults:
    """Resolve what a verification report found, only for the requested categories.

    Conflicts where the store no longer has the asset are treated as an
    upstream deletion: the mirror row is soft-deleted and queued for cleanup.
    """
    fixes = FixResults()
    if fix_missing_in_database:
        now = now_utc()
        for public_id in report.missing_in_database:
            descriptor = report.descriptors.get(public_id)
            if descriptor is None:
                continue
            await mirror_service.upsert_from_descriptor(session, descriptor, now=now)
            fixes.fixed_missing_in_database += 1
        await session.commit()

    if fix_conflicts:
        for conflict in report.sync_conflicts:
            if conflict.kind == ConflictKind.MISSING_IN_CLOUDINARY:
                deleted = await mirror_service.soft_delete(
                    session,
                    conflict.public_id,
                    deleted_by=triggered_by,
                    reason="Deleted upstream in Cloudinary",
                )
                if deleted:
                    fixes.soft_deleted.append(conflict.public_id)
                    fixes.fixed_conflicts += 1
                continue
            single = await sync_single_asset(session, store, conflict.public_id)
            if single.success:
                fixes.fixed_conflicts += 1
            else:
                fixes.fix_errors.append(
                    f"Failed to fix conflict for {conflict.public_id}: {single.error}"
                )
        await session.commit()

    logger.info(
        "Applied fixes: imported=%d conflicts=%d errors=%d",
        fixes.fixed_missing_in_database,
        fixes.fixed_conflicts,
        len(fixes.fix_errors),
    )
    return fixes
