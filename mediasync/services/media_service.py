"""User-initiated media operations: listing, uploads and deletion.

Uploads and deletions go to the store first and then to the mirror row.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from mediasync.models.operation import OperationSource, OperationStatus, OperationType
from mediasync.services import mirror_service
from mediasync.store.base import AssetNotFoundError, AssetStoreError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mediasync.models.asset import AssetRecord
    from mediasync.services.operation_service import SyncOperationTracker
    from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)


@dataclass
class DeleteFailure:
    public_id: str
    error: str
    queued_for_cleanup: bool = False


@dataclass
class MediaDeleteResult:
    deleted: list[str] = field(default_factory=list)
    failed: list[DeleteFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"deleted": list(self.deleted), "failed": [asdict(f) for f in self.failed]}


def parse_public_ids(*sources: str | list[str] | None) -> list[str]:
    """Merge comma-separated strings and lists into unique ids, keeping first-seen order."""
    seen: dict[str, None] = {}
    for source in sources:
        if not source:
            continue
        values = source.split(",") if isinstance(source, str) else source
        for value in values:
            value = value.strip()
            if value:
                seen.setdefault(value, None)
    return list(seen)


async def delete_media(
    session: AsyncSession,
    store: AssetStore,
    public_ids: list[str],
    *,
    deleted_by: str = "ui",
) -> MediaDeleteResult:
    """Delete each asset from the store and hard-delete its mirror row.

    When the store call fails the row is soft-deleted and queued for the
    cleanup processor, so the deletion still propagates later.
    """
    result = MediaDeleteResult()
    for public_id in public_ids:
        record = await mirror_service.get_asset(session, public_id, include_deleted=True)
        resource_type = record.resource_type if record is not None else "image"
        try:
            await store.delete_asset(public_id, resource_type)
        except AssetNotFoundError:
            logger.info("Asset %s already absent from the store", public_id)
        except AssetStoreError as exc:
            logger.warning("Store deletion of %s failed: %s", public_id, exc)
            queued = await mirror_service.soft_delete(
                session, public_id, deleted_by=deleted_by, reason=f"Store deletion failed: {exc}"
            )
            if not queued and record is not None:
                # already soft-deleted: make sure something will finish the job
                await mirror_service.enqueue_cleanup(
                    session,
                    public_id,
                    resource_type=resource_type,
                    reason=f"Store deletion failed: {exc}",
                    trigger_source=deleted_by,
                )
                queued = True
            await session.commit()
            result.failed.append(
                DeleteFailure(public_id=public_id, error=str(exc), queued_for_cleanup=queued)
            )
            continue

        await mirror_service.hard_delete(session, public_id, only_soft_deleted=False)
        await session.commit()
        result.deleted.append(public_id)
    logger.info("Media delete: %d deleted, %d failed", len(result.deleted), len(result.failed))
    return result


@dataclass
class MediaPage:
    assets: list[AssetRecord]
    total: int
    page: int
    limit: int

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "assets": [record.to_dict() for record in self.assets],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }


async def list_media(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 50,
    folder: str | None = None,
    resource_type: str | None = None,
    search: str | None = None,
) -> MediaPage:
    """Return one page of live mirror rows, newest first."""
    records, total = await mirror_service.search_live_assets(
        session,
        offset=(page - 1) * limit,
        limit=limit,
        folder=folder,
        resource_type=resource_type,
        search=search,
    )
    return MediaPage(assets=records, total=total, page=page, limit=limit)


@dataclass
class UploadResult:
    asset: dict[str, Any]
    outcome: str | None = None
    database_synced: bool = False
    database_error: str | None = None
    operation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "data": self.asset,
            "database_sync": {
                "success": self.database_synced,
                "outcome": self.outcome,
                "error": self.database_error,
            },
            "operation_id": self.operation_id,
        }


async def upload_media(
    session: AsyncSession,
    store: AssetStore,
    tracker: SyncOperationTracker,
    data: bytes,
    *,
    filename: str | None = None,
    folder: str | None = None,
    tags: list[str] | None = None,
    uploaded_by: str = "admin",
) -> UploadResult:
    """Upload bytes to the store and write the mirror row from the returned descriptor.

    Store errors propagate. A mirror write failure leaves the upload in place and
    is reported; the next full sync imports the asset.
    """
    operation_id = await tracker.create_operation(
        OperationType.UPLOAD,
        total_items=1,
        source=OperationSource.API,
        triggered_by=uploaded_by,
        operation_data={"filename": filename, "folder": folder, "size": len(data)},
    )
    try:
        descriptor = await store.upload_asset(data, folder=folder, tags=tags, filename=filename)
    except AssetStoreError as exc:
        await tracker.complete_operation(
            operation_id, OperationStatus.FAILED, {"errors": [f"Upload failed: {exc}"]}
        )
        raise

    result = UploadResult(asset=descriptor.to_dict(), operation_id=operation_id)
    try:
        outcome = await mirror_service.upsert_from_descriptor(session, descriptor, revive=True)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Uploaded %s but the mirror write failed: %s", descriptor.public_id, exc)
        result.database_error = str(exc)
        await tracker.complete_operation(
            operation_id,
            OperationStatus.FAILED,
            {"public_id": descriptor.public_id, "errors": [f"Mirror write failed: {exc}"]},
        )
        return result

    result.outcome = outcome
    result.database_synced = True
    await tracker.update_progress(operation_id, processed=1)
    await tracker.complete_operation(operation_id, OperationStatus.COMPLETED)
    logger.info("Uploaded %s (%s)", descriptor.public_id, outcome)
    return result
