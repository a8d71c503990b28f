"""Tests for store notification handling."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select

from mediasync.models.cleanup import CleanupQueueItem
from mediasync.models.operation import OperationSource, OperationStatus, OperationType
from mediasync.services import mirror_service
from mediasync.services.webhook_service import (
    extract_targets,
    handle_notification,
    operation_type_for,
)
from tests._fakes import FakeAssetStore, make_descriptor

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mediasync.services.operation_service import SyncOperationTracker


class TestTargets:
    def test_single_and_bulk(self) -> None:
        payload = {
            "public_id": "a",
            "resource_type": "video",
            "resources": [{"public_id": "b"}, {"nope": 1}, "junk"],
        }
        assert extract_targets(payload) == [("a", "video"), ("b", None)]

    def test_operation_mapping(self) -> None:
        assert operation_type_for("destroy") == OperationType.DELETE
        assert operation_type_for("upload") == OperationType.UPLOAD
        assert operation_type_for("restore") == OperationType.UPDATE


class TestHandleNotification:
    async def test_upload_creates_row(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
    ) -> None:
        fake_store.add(make_descriptor("new"))
        result = await handle_notification(
            db_session, fake_store, tracker, {"notification_type": "upload", "public_id": "new"}
        )

        assert result.success
        assert await mirror_service.get_asset(db_session, "new") is not None
        assert result.operation_id is not None
        operation = await tracker.get_operation(result.operation_id)
        assert operation.operation_type == OperationType.WEBHOOK
        assert operation.source == OperationSource.WEBHOOK
        assert operation.status == OperationStatus.COMPLETED
        assert operation.operation_data["mapped_operation"] == OperationType.UPLOAD

    async def test_delete_removes_row_without_queueing(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
    ) -> None:
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("old"))
        await db_session.commit()

        result = await handle_notification(
            db_session,
            fake_store,
            tracker,
            {"notification_type": "delete", "resources": [{"public_id": "old"}]},
        )

        assert result.success
        assert await mirror_service.get_asset(db_session, "old", include_deleted=True) is None
        queue = (await db_session.execute(select(CleanupQueueItem))).scalars().all()
        assert queue == []
        assert fake_store.delete_calls == []

    async def test_restore_revives_soft_deleted(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
    ) -> None:
        fake_store.add(make_descriptor("back"))
        await mirror_service.upsert_from_descriptor(db_session, make_descriptor("back"))
        await mirror_service.soft_delete(db_session, "back", deleted_by="ui", reason="r")
        await db_session.commit()

        result = await handle_notification(
            db_session, fake_store, tracker, {"notification_type": "restore", "public_id": "back"}
        )
        assert result.success
        assert await mirror_service.get_asset(db_session, "back") is not None
        queue = (await db_session.execute(select(CleanupQueueItem))).scalars().all()
        assert queue == []

    async def test_update_for_missing_asset_fails_operation(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
    ) -> None:
        result = await handle_notification(
            db_session, fake_store, tracker, {"notification_type": "update", "public_id": "ghost"}
        )
        assert not result.success
        assert result.errors == ["ghost: Asset not found in Cloudinary"]
        assert result.operation_id is not None
        operation = await tracker.get_operation(result.operation_id)
        assert operation.status == OperationStatus.FAILED

    async def test_unknown_type_is_ignored(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
    ) -> None:
        result = await handle_notification(
            db_session, fake_store, tracker, {"notification_type": "eager", "public_id": "x"}
        )
        assert result.success
        assert result.operation_id is None
        assert "Ignored" in result.message

    async def test_missing_public_id(
        self,
        db_session: AsyncSession,
        fake_store: FakeAssetStore,
        tracker: SyncOperationTracker,
    ) -> None:
        result = await handle_notification(
            db_session, fake_store, tracker, {"notification_type": "upload"}
        )
        assert not result.success
        assert await tracker.list_operations() == []
