"""Tests for metadata mirror access."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from sqlalchemy import select

from mediasync.models.asset import AssetRecord, SyncStatus
from mediasync.models.cleanup import CleanupQueueItem, CleanupStatus
from mediasync.services import mirror_service
from mediasync.services.mirror_service import UpsertOutcome, has_changed, mime_type_for
from tests._fakes import make_descriptor

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


async def _queue(session: AsyncSession) -> list[CleanupQueueItem]:
    return list((await session.execute(select(CleanupQueueItem))).scalars())


class TestMimeType:
    def test_known_formats(self) -> None:
        assert mime_type_for("JPG", "image") == "image/jpeg"
        assert mime_type_for("mp4", "video") == "video/mp4"
        assert mime_type_for("png", "raw") == "image/png"

    def test_unknown_format(self) -> None:
        assert mime_type_for("xyz", "image") == "application/octet-stream"
        assert mime_type_for(None, "raw") == "application/octet-stream"


class TestUpsert:
    async def test_create_then_unchanged(self, db_session: AsyncSession) -> None:
        d = make_descriptor("a", tags=("x", "y"), folder="f")
        assert await mirror_service.upsert_from_descriptor(db_session, d) == UpsertOutcome.CREATED
        assert (
            await mirror_service.upsert_from_descriptor(db_session, d) == UpsertOutcome.UNCHANGED
        )

        record = await mirror_service.get_asset(db_session, "a")
        assert record is not None
        assert record.sync_status == SyncStatus.SYNCED
        assert record.mime_type == "image/jpeg"
        assert record.tags == ["x", "y"]
        assert record.last_synced_at is not None

    async def test_version_change_updates(self, db_session: AsyncSession) -> None:
        d = make_descriptor("a")
        await mirror_service.upsert_from_descriptor(db_session, d)
        newer = make_descriptor("a", version=2)
        assert (
            await mirror_service.upsert_from_descriptor(db_session, newer) == UpsertOutcome.UPDATED
        )
        record = await mirror_service.get_asset(db_session, "a")
        assert record is not None
        assert record.version == 2

    async def test_tag_order_is_not_a_change(self, db_session: AsyncSession) -> None:
        await mirror_service.upsert_from_descriptor(
            db_session, make_descriptor("a", tags=("b", "a"))
        )
        record = await mirror_service.get_asset(db_session, "a")
        assert record is not None
        assert not has_changed(record, make_descriptor("a", tags=("a", "b")))
        assert has_changed(record, make_descriptor("a", tags=("a",)))

    async def test_force_rewrites(self, db_session: AsyncSession) -> None:
        d = make_descriptor("a")
        await mirror_service.upsert_from_descriptor(db_session, d)
        outcome = await mirror_service.upsert_from_descriptor(db_session, d, force=True)
        assert outcome == UpsertOutcome.UPDATED

    async def test_soft_deleted_row_is_skipped(self, db_session: AsyncSession) -> None:
        d = make_descriptor("a")
        await mirror_service.upsert_from_descriptor(db_session, d)
        await mirror_service.soft_delete(db_session, "a", deleted_by="ui", reason="user")

        outcome = await mirror_service.upsert_from_descriptor(db_session, replace(d, version=9))
        assert outcome == UpsertOutcome.SKIPPED
        assert await mirror_service.get_asset(db_session, "a") is None

    async def test_revive_discards_pending_cleanup(self, db_session: AsyncSession) -> None:
        d = make_descriptor("a")
        await mirror_service.upsert_from_descriptor(db_session, d)
        await mirror_service.soft_delete(db_session, "a", deleted_by="ui", reason="user")
        assert len(await _queue(db_session)) == 1

        outcome = await mirror_service.upsert_from_descriptor(db_session, d, revive=True)
        assert outcome == UpsertOutcome.UPDATED
        record = await mirror_service.get_asset(db_session, "a")
        assert record is not None
        assert record.deleted_by is None
        assert await _queue(db_session) == []


class TestDeletes:
    async def test_soft_delete_enqueues_once(self, db_session: AsyncSession) -> None:
        await mirror_service.upsert_from_descriptor(
            db_session, make_descriptor("v", resource_type="video", fmt="mp4")
        )
        assert await mirror_service.soft_delete(db_session, "v", deleted_by="ui", reason="r")
        assert not await mirror_service.soft_delete(db_session, "v", deleted_by="ui", reason="r")
        await mirror_service.enqueue_cleanup(db_session, "v", reason="again")

        items = await _queue(db_session)
        assert len(items) == 1
        assert items[0].resource_type == "video"
        assert items[0].trigger_source == "ui"
        assert items[0].status == CleanupStatus.PENDING
        assert items[0].attempts == 0

    async def test_soft_delete_without_enqueue(self, db_session: AsyncSession) -> None:
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("a"))
        await mirror_service.soft_delete(
            db_session, "a", deleted_by="webhook", reason="r", enqueue=False
        )
        assert await _queue(db_session) == []
        assert await mirror_service.soft_deleted_public_ids(db_session) == {"a"}

    async def test_hard_delete_only_soft_deleted(self, db_session: AsyncSession) -> None:
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("a"))
        assert not await mirror_service.hard_delete(db_session, "a")
        assert await mirror_service.hard_delete(db_session, "a", only_soft_deleted=False)
        assert await mirror_service.get_asset(db_session, "a", include_deleted=True) is None

    async def test_enqueue_after_terminal_item_creates_new(self, db_session: AsyncSession) -> None:
        item = await mirror_service.enqueue_cleanup(db_session, "a", reason="first")
        item.status = CleanupStatus.FAILED
        await db_session.flush()
        second = await mirror_service.enqueue_cleanup(db_session, "a", reason="second")
        assert second.id != item.id


class TestQueries:
    async def test_live_iteration_excludes_deleted(self, db_session: AsyncSession) -> None:
        for name in ("a", "b", "c"):
            await mirror_service.upsert_from_descriptor(db_session, make_descriptor(name))
        await mirror_service.soft_delete(db_session, "b", deleted_by="ui", reason="r")

        pages = [page async for page in mirror_service.iter_live_assets(db_session, page_size=1)]
        assert [[r.public_id for r in page] for page in pages] == [["a"], ["c"]]
        assert set(await mirror_service.load_live_assets(db_session)) == {"a", "c"}

    async def test_count_by_status(self, db_session: AsyncSession) -> None:
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("a"))
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("b"))
        await mirror_service.mark_error(db_session, "b", "boom")
        counts = await mirror_service.count_by_status(db_session)
        assert counts == {"pending": 0, "synced": 1, "error": 1, "conflict": 0}

        record = await mirror_service.get_asset(db_session, "b")
        assert record is not None
        assert record.sync_error == "boom"

    async def test_queue_stats_and_recent(self, db_session: AsyncSession) -> None:
        await mirror_service.enqueue_cleanup(db_session, "a", reason="r")
        failed = await mirror_service.enqueue_cleanup(db_session, "b", reason="r")
        failed.status = CleanupStatus.FAILED
        await db_session.flush()

        stats = await mirror_service.queue_stats(db_session)
        assert stats["pending"] == 1
        assert stats["failed"] == 1
        assert stats["total"] == 2
        recent = await mirror_service.recent_queue_items(db_session, limit=1)
        assert len(recent) == 1

    async def test_latest_sync_time(self, db_session: AsyncSession) -> None:
        assert await mirror_service.latest_sync_time(db_session) is None
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("a"))
        assert await mirror_service.latest_sync_time(db_session) is not None

    async def test_orphans_are_requeued(self, db_session: AsyncSession) -> None:
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("a"))
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("b"))
        await mirror_service.soft_delete(
            db_session, "a", deleted_by="ui", reason="r", enqueue=False
        )
        await mirror_service.soft_delete(db_session, "b", deleted_by="ui", reason="r")

        orphans = await mirror_service.find_orphaned_deletions(db_session)
        assert [r.public_id for r in orphans] == ["a"]
        assert await mirror_service.requeue_orphans(db_session) == ["a"]
        await db_session.flush()
        assert await mirror_service.find_orphaned_deletions(db_session) == []

        rows = (await db_session.execute(select(AssetRecord))).scalars().all()
        assert len(rows) == 2
