"""Asset store sync, cleanup, scheduler and media schemas."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from mediasync.models.asset import ResourceType


class SyncRequest(BaseModel):
    """Full or single-asset sync trigger."""

    force: bool = Field(default=False, description="Rewrite rows even when unchanged")
    batch_size: int | None = Field(default=None, ge=1, le=1000)
    single_asset: str | None = Field(
        default=None, min_length=1, description="Public id to sync instead of a full pass"
    )
    folder_filter: str | None = None
    resource_type_filter: ResourceType | None = None


class CleanupRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)
    specific_id: int | None = Field(default=None, ge=1)
    force_retry: bool = False


class SchedulerRequest(BaseModel):
    action: Literal["status", "start", "stop", "force_cleanup", "force_sync"]


class SyncFixRequest(BaseModel):
    process_queue: bool = Field(default=True, description="Drain the queue after re-queuing")
    limit: int | None = Field(default=None, ge=1, le=500)


class MediaDeleteRequest(BaseModel):
    public_ids: list[str] = Field(default_factory=list)


class MediaDeleteResponse(BaseModel):
    success: bool
    deleted: list[str]
    failed: list[dict[str, Any]]
    message: str
