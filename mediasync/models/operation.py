"""Tracked sync operations, health snapshots and run locks."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from mediasync.models.base import Base, UTCDateTime


class OperationType(StrEnum):
    UPLOAD = "upload"
    DELETE = "delete"
    UPDATE = "update"
    FULL_SYNC = "full_sync"
    WEBHOOK = "webhook"


class OperationStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationSource(StrEnum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    API = "api"
    SCHEDULED = "scheduled"


TERMINAL_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED}
)
ACTIVE_STATUSES = (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)


class SnapshotType(StrEnum):
    HOURLY = "hourly"
    DAILY = "daily"
    MANUAL = "manual"
    ERROR = "error"


class SyncOperation(Base):
    """A unit of tracked work: a full reconcile, a single-asset sync, a cleanup batch."""

    __tablename__ = "sync_operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OperationStatus.PENDING
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    estimated_completion: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=OperationSource.MANUAL)
    operation_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_sync_operations_status", "status"),
        Index("idx_sync_operations_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "status": self.status,
            "progress": self.progress,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "failed_items": self.failed_items,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
            "triggered_by": self.triggered_by,
            "source": self.source,
            "operation_data": self.operation_data,
            "error_details": self.error_details,
        }


class StatusSnapshot(Base):
    """Point-in-time health rollup. Never mutated after insert."""

    __tablename__ = "sync_status_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    snapshot_type: Mapped[str] = mapped_column(String(20), nullable=False)
    total_assets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    synced_assets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_assets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_assets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conflict_assets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_operations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_sync_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    system_health: Mapped[str] = mapped_column(String(20), nullable=False, default="healthy")
    performance_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (Index("idx_sync_snapshots_created", "created_at"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "snapshot_type": self.snapshot_type,
            "total_assets": self.total_assets,
            "synced_assets": self.synced_assets,
            "pending_assets": self.pending_assets,
            "error_assets": self.error_assets,
            "conflict_assets": self.conflict_assets,
            "active_operations": self.active_operations,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "system_health": self.system_health,
            "performance_score": self.performance_score,
            "error_rate": self.error_rate,
            "created_at": self.created_at.isoformat(),
        }


class RunLock(Base):
    """Lease row backing the database run-lock provider."""

    __tablename__ = "sync_run_locks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(64), nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
