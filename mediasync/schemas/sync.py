"""Verification, operation and snapshot schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from mediasync.models.operation import SnapshotType


class VerifyFixRequest(BaseModel):
    """Verification with optional repair of the categories named by the flags."""

    auto_fix: bool = Field(default=False, description="Shorthand for both fix flags")
    fix_missing_in_database: bool = False
    fix_conflicts: bool = False


class VerifyResponse(BaseModel):
    success: bool
    verification: dict[str, Any]
    summary: dict[str, Any]
    processing_time_ms: int
    timestamp: str


class VerifyFixResponse(VerifyResponse):
    fixes_applied: bool
    fix_results: dict[str, Any]


class OperationResponse(BaseModel):
    """A tracked sync operation."""

    id: str
    operation_type: str
    status: str
    progress: int
    total_items: int
    processed_items: int
    failed_items: int
    start_time: str
    end_time: str | None = None
    estimated_completion: str | None = None
    triggered_by: str | None = None
    source: str
    operation_data: dict[str, Any] = Field(default_factory=dict)
    error_details: dict[str, Any] = Field(default_factory=dict)


class OperationListResponse(BaseModel):
    operations: list[OperationResponse]
    active_count: int


class SnapshotRequest(BaseModel):
    snapshot_type: SnapshotType = SnapshotType.MANUAL


class SnapshotResponse(BaseModel):
    id: str
    snapshot_type: str
    total_assets: int
    synced_assets: int
    pending_assets: int
    error_assets: int
    conflict_assets: int
    active_operations: int
    last_sync_time: str | None = None
    system_health: str
    performance_score: int
    error_rate: float
    created_at: str
