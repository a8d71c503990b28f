"""SQLAlchemy ORM models for the media mirror."""

from mediasync.models.asset import AssetRecord, ResourceType, SyncStatus
from mediasync.models.base import Base, UTCDateTime
from mediasync.models.cleanup import CleanupQueueItem, CleanupStatus
from mediasync.models.operation import (
    OperationSource,
    OperationStatus,
    OperationType,
    RunLock,
    SnapshotType,
    StatusSnapshot,
    SyncOperation,
)

__all__ = [
    "AssetRecord",
    "Base",
    "CleanupQueueItem",
    "CleanupStatus",
    "OperationSource",
    "OperationStatus",
    "OperationType",
    "ResourceType",
    "RunLock",
    "SnapshotType",
    "StatusSnapshot",
    "SyncOperation",
    "SyncStatus",
    "UTCDateTime",
]
