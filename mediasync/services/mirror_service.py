"""Metadata mirror access: live queries, upserts, soft/hard deletes and the cleanup queue.

Functions here flush but never commit; callers own the transaction boundary.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select

from mediasync.models.asset import AssetRecord, SyncStatus
from mediasync.models.cleanup import OPEN_CLEANUP_STATUSES, CleanupQueueItem, CleanupStatus
from mediasync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from mediasync.store.base import AssetDescriptor

logger = logging.getLogger(__name__)

_IMAGE_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}
_VIDEO_MIME = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
}
DEFAULT_MIME = "application/octet-stream"


class UpsertOutcome(StrEnum):
    """What an upsert did to the mirror row."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"  # row is soft-deleted and waiting for cleanup


def mime_type_for(fmt: str | None, resource_type: str | None) -> str:
    """Map a store format to a MIME type."""
    key = (fmt or "").lower()
    if resource_type == "video":
        return _VIDEO_MIME.get(key, DEFAULT_MIME)
    if resource_type == "image":
        return _IMAGE_MIME.get(key, DEFAULT_MIME)
    return _IMAGE_MIME.get(key) or _VIDEO_MIME.get(key) or DEFAULT_MIME


def has_changed(record: AssetRecord, descriptor: AssetDescriptor) -> bool:
    """Return True when the store copy differs from the mirror row."""
    return (
        record.version != descriptor.version
        or record.signature != descriptor.signature
        or record.file_size != descriptor.bytes
        or sorted(record.tags or []) != sorted(descriptor.tags)
    )


def apply_descriptor(record: AssetRecord, descriptor: AssetDescriptor, now: datetime) -> None:
    """Copy store fields onto a mirror row and mark it synced."""
    record.version = descriptor.version
    record.signature = descriptor.signature
    record.etag = descriptor.etag
    record.resource_type = descriptor.resource_type
    record.folder = descriptor.folder
    record.tags = sorted(descriptor.tags)
    record.original_filename = descriptor.original_filename
    record.display_name = descriptor.display_name or descriptor.original_filename
    record.file_size = descriptor.bytes
    record.format = descriptor.format
    record.mime_type = mime_type_for(descriptor.format, descriptor.resource_type)
    record.width = descriptor.width
    record.height = descriptor.height
    record.secure_url = descriptor.secure_url
    record.url = descriptor.url
    record.store_created_at = descriptor.created_at
    record.sync_status = SyncStatus.SYNCED
    record.sync_error = None
    record.updated_at = now
    record.last_synced_at = now


async def get_asset(
    session: AsyncSession, public_id: str, *, include_deleted: bool = False
) -> AssetRecord | None:
    stmt = select(AssetRecord).where(AssetRecord.public_id == public_id)
    if not include_deleted:
        stmt = stmt.where(AssetRecord.deleted_at.is_(None))
    return (await session.execute(stmt)).scalar_one_or_none()


async def iter_live_assets(
    session: AsyncSession, page_size: int = 1000
) -> AsyncIterator[list[AssetRecord]]:
    """Yield live mirror rows in pages ordered by primary key."""
    last_id = 0
    while True:
        stmt = (
            select(AssetRecord)
            .where(AssetRecord.deleted_at.is_(None), AssetRecord.id > last_id)
            .order_by(AssetRecord.id)
            .limit(page_size)
        )
        rows = list((await session.execute(stmt)).scalars())
        if not rows:
            return
        yield rows
        last_id = rows[-1].id


async def load_live_assets(session: AsyncSession, page_size: int = 1000) -> dict[str, AssetRecord]:
    """Return every live mirror row keyed by public id."""
    result: dict[str, AssetRecord] = {}
    async for page in iter_live_assets(session, page_size):
        for record in page:
            result[record.public_id] = record
    return result


async def search_live_assets(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 50,
    folder: str | None = None,
    resource_type: str | None = None,
    search: str | None = None,
) -> tuple[list[AssetRecord], int]:
    """Return a page of live rows, newest first, and the total matching count."""
    conditions = [AssetRecord.deleted_at.is_(None)]
    if folder:
        conditions.append(AssetRecord.folder == folder)
    if resource_type:
        conditions.append(AssetRecord.resource_type == resource_type)
    if search:
        pattern = f"%{search}%"
        conditions.append(
            AssetRecord.public_id.ilike(pattern) | AssetRecord.display_name.ilike(pattern)
        )

    count_stmt = select(func.count()).select_from(AssetRecord).where(*conditions)
    total = (await session.execute(count_stmt)).scalar_one()
    stmt = (
        select(AssetRecord)
        .where(*conditions)
        .order_by(AssetRecord.created_at.desc(), AssetRecord.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars()), total


async def soft_deleted_public_ids(session: AsyncSession) -> set[str]:
    stmt = select(AssetRecord.public_id).where(AssetRecord.deleted_at.is_not(None))
    return set((await session.execute(stmt)).scalars())


async def upsert_from_descriptor(
    session: AsyncSession,
    descriptor: AssetDescriptor,
    *,
    force: bool = False,
    revive: bool = False,
    now: datetime | None = None,
) -> UpsertOutcome:
    """Insert or refresh the mirror row for a store asset.

    A soft-deleted row is left alone unless ``revive`` is set, in which case it
    becomes live again and its pending cleanup items are discarded.
    """
    now = now or now_utc()
    record = await get_asset(session, descriptor.public_id, include_deleted=True)
    if record is None:
        record = AssetRecord(public_id=descriptor.public_id, created_at=now)
        apply_descriptor(record, descriptor, now)
        session.add(record)
        await session.flush()
        return UpsertOutcome.CREATED

    if record.deleted_at is not None:
        if not revive:
            return UpsertOutcome.SKIPPED
        record.deleted_at = None
        record.deleted_by = None
        await discard_pending_cleanup(session, descriptor.public_id)
        apply_descriptor(record, descriptor, now)
        await session.flush()
        logger.info("Revived soft-deleted mirror row %s", descriptor.public_id)
        return UpsertOutcome.UPDATED

    if not force and not has_changed(record, descriptor):
        return UpsertOutcome.UNCHANGED

    apply_descriptor(record, descriptor, now)
    await session.flush()
    return UpsertOutcome.UPDATED


async def mark_error(session: AsyncSession, public_id: str, error: str) -> None:
    record = await get_asset(session, public_id)
    if record is not None:
        record.sync_status = SyncStatus.ERROR
        record.sync_error = error[:1000]
        record.updated_at = now_utc()
        await session.flush()


async def enqueue_cleanup(
    session: AsyncSession,
    public_id: str,
    *,
    resource_type: str = "image",
    reason: str,
    trigger_source: str = "system",
    now: datetime | None = None,
) -> CleanupQueueItem:
    """Queue a store-side deletion. An open item for the same public id is reused."""
    existing = (
        await session.execute(
            select(CleanupQueueItem)
            .where(
                CleanupQueueItem.cloudinary_public_id == public_id,
                CleanupQueueItem.status.in_(OPEN_CLEANUP_STATUSES),
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    now = now or now_utc()
    item = CleanupQueueItem(
        cloudinary_public_id=public_id,
        resource_type=resource_type,
        reason=reason,
        trigger_source=trigger_source,
        attempts=0,
        status=CleanupStatus.PENDING,
        created_at=now,
        updated_at=now,
        next_attempt_at=now,
    )
    session.add(item)
    await session.flush()
    logger.debug("Enqueued cleanup for %s (%s)", public_id, reason)
    return item


async def discard_pending_cleanup(session: AsyncSession, public_id: str) -> int:
    """Drop pending (unclaimed) cleanup items for a public id."""
    result = await session.execute(
        delete(CleanupQueueItem).where(
            CleanupQueueItem.cloudinary_public_id == public_id,
            CleanupQueueItem.status == CleanupStatus.PENDING,
        )
    )
    return result.rowcount or 0


async def soft_delete(
    session: AsyncSession,
    public_id: str,
    *,
    deleted_by: str,
    reason: str,
    enqueue: bool = True,
    now: datetime | None = None,
) -> bool:
    """Mark a live row deleted and, unless told otherwise, queue the store deletion.

    Returns False when there is no live row for the public id.
    """
    record = await get_asset(session, public_id)
    if record is None:
        return False
    now = now or now_utc()
    record.deleted_at = now
    record.deleted_by = deleted_by
    record.updated_at = now
    if enqueue:
        await enqueue_cleanup(
            session,
            public_id,
            resource_type=record.resource_type,
            reason=reason,
            trigger_source=deleted_by,
            now=now,
        )
    await session.flush()
    return True


async def hard_delete(
    session: AsyncSession, public_id: str, *, only_soft_deleted: bool = True
) -> bool:
    """Remove the mirror row for a public id."""
    stmt = delete(AssetRecord).where(AssetRecord.public_id == public_id)
    if only_soft_deleted:
        stmt = stmt.where(AssetRecord.deleted_at.is_not(None))
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    """Count live rows per sync status; every status is present, zero when empty."""
    counts = {status.value: 0 for status in SyncStatus}
    rows = await session.execute(
        select(AssetRecord.sync_status, func.count())
        .where(AssetRecord.deleted_at.is_(None))
        .group_by(AssetRecord.sync_status)
    )
    for status, count in rows:
        counts[status] = count
    return counts


async def latest_sync_time(session: AsyncSession) -> datetime | None:
    return (
        await session.execute(
            select(AssetRecord.last_synced_at)
            .where(AssetRecord.last_synced_at.is_not(None))
            .order_by(AssetRecord.last_synced_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def queue_stats(session: AsyncSession) -> dict[str, int]:
    """Count cleanup items per status plus a total."""
    stats = {status.value: 0 for status in CleanupStatus}
    rows = await session.execute(
        select(CleanupQueueItem.status, func.count()).group_by(CleanupQueueItem.status)
    )
    for status, count in rows:
        stats[status] = count
    stats["total"] = sum(stats.values())
    return stats


async def recent_queue_items(session: AsyncSession, limit: int = 20) -> list[CleanupQueueItem]:
    stmt = (
        select(CleanupQueueItem)
        .order_by(CleanupQueueItem.created_at.desc(), CleanupQueueItem.id.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars())


async def find_orphaned_deletions(session: AsyncSession) -> list[AssetRecord]:
    """Soft-deleted rows that have no open cleanup item to finish them."""
    open_ids = select(CleanupQueueItem.cloudinary_public_id).where(
        CleanupQueueItem.status.in_(OPEN_CLEANUP_STATUSES)
    )
    stmt = (
        select(AssetRecord)
        .where(AssetRecord.deleted_at.is_not(None), AssetRecord.public_id.not_in(open_ids))
        .order_by(AssetRecord.deleted_at)
    )
    return list((await session.execute(stmt)).scalars())


async def requeue_orphans(session: AsyncSession, *, trigger_source: str = "sync_fix") -> list[str]:
    """Enqueue cleanup for every orphaned soft-deleted row. Returns the public ids."""
    orphans = await find_orphaned_deletions(session)
    now = now_utc()
    for record in orphans:
        await enqueue_cleanup(
            session,
            record.public_id,
            resource_type=record.resource_type,
            reason="Re-queued orphaned soft delete",
            trigger_source=trigger_source,
            now=now,
        )
    return [record.public_id for record in orphans]
