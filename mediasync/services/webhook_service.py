"""Store notification handling."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from mediasync.models.operation import OperationSource, OperationStatus, OperationType
from mediasync.services import mirror_service, reconcile_service

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mediasync.services.operation_service import SyncOperationTracker
    from mediasync.store.base import AssetStore

logger = logging.getLogger(__name__)

SYNC_NOTIFICATIONS = frozenset({"upload", "update", "restore"})
DELETE_NOTIFICATIONS = frozenset({"delete", "destroy"})


@dataclass
class WebhookResult:
    success: bool
    notification_type: str
    public_ids: list[str] = field(default_factory=list)
    operation_id: str | None = None
    message: str = ""
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def extract_targets(payload: dict[str, Any]) -> list[tuple[str, str | None]]:
    """Return (public_id, resource_type) pairs named by a notification."""
    targets: list[tuple[str, str | None]] = []
    public_id = payload.get("public_id")
    if isinstance(public_id, str) and public_id:
        targets.append((public_id, payload.get("resource_type")))
    for resource in payload.get("resources") or []:
        if isinstance(resource, dict) and isinstance(resource.get("public_id"), str):
            targets.append((resource["public_id"], resource.get("resource_type")))
    return targets


def operation_type_for(notification_type: str) -> str:
    if notification_type in DELETE_NOTIFICATIONS:
        return OperationType.DELETE
    if notification_type == "upload":
        return OperationType.UPLOAD
    return OperationType.UPDATE


async def handle_notification(
    session: AsyncSession,
    store: AssetStore,
    tracker: SyncOperationTracker,
    payload: dict[str, Any],
) -> WebhookResult:
    """Apply one store notification to the mirror.

    Uploads, updates and restores re-sync the named assets. Deletions already
    happened in the store, so the mirror rows are removed without queuing cleanup.
    """
    notification_type = str(payload.get("notification_type") or "")
    targets = extract_targets(payload)
    result = WebhookResult(
        success=True,
        notification_type=notification_type,
        public_ids=[public_id for public_id, _ in targets],
    )
    if notification_type not in SYNC_NOTIFICATIONS | DELETE_NOTIFICATIONS:
        result.message = f"Ignored notification type: {notification_type or 'unknown'}"
        logger.info(result.message)
        return result
    if not targets:
        result.success = False
        result.message = "Notification names no public_id"
        return result

    result.operation_id = await tracker.create_operation(
        OperationType.WEBHOOK,
        total_items=len(targets),
        source=OperationSource.WEBHOOK,
        triggered_by=notification_type,
        operation_data={
            "notification_type": notification_type,
            "mapped_operation": operation_type_for(notification_type),
            "public_ids": result.public_ids,
        },
    )

    processed = 0
    for public_id, resource_type in targets:
        if notification_type in DELETE_NOTIFICATIONS:
            await mirror_service.soft_delete(
                session,
                public_id,
                deleted_by="webhook",
                reason="Deleted in Cloudinary",
                enqueue=False,
            )
            await mirror_service.hard_delete(session, public_id)
            await session.commit()
            processed += 1
        else:
            single = await reconcile_service.sync_single_asset(
                session,
                store,
                public_id,
                resource_type=resource_type,
                revive=notification_type == "restore",
            )
            if single.success:
                processed += 1
            else:
                result.errors.append(f"{public_id}: {single.error}")
        await tracker.update_progress(
            result.operation_id, processed=processed, failed=len(result.errors)
        )

    result.success = not result.errors
    result.message = f"Processed {processed}/{len(targets)} {notification_type} notification(s)"
    await tracker.complete_operation(
        result.operation_id,
        OperationStatus.COMPLETED if result.success else OperationStatus.FAILED,
        {"errors": result.errors} if result.errors else None,
    )
    logger.info("Webhook %s: %s", notification_type, result.message)
    return result
