"""Mirror of asset-store objects."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mediasync.models.base import Base, UTCDateTime


class SyncStatus(StrEnum):
    """Reconciliation state of a mirror row."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    CONFLICT = "conflict"


class ResourceType(StrEnum):
    IMAGE = "image"
    VIDEO = "video"
    RAW = "raw"


class AssetRecord(Base):
    """One asset-store object as known locally.

    ``deleted_at`` is the soft-delete marker: rows with a value are excluded
    from every live query and wait for the cleanup processor to hard-delete them.
    """

    __tablename__ = "media_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    etag: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resource_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ResourceType.IMAGE
    )
    folder: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    original_filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    format: Mapped[str | None] = mapped_column(String(32), nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    secure_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SyncStatus.PENDING
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    store_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_media_assets_sync_status", "sync_status"),
        Index("idx_media_assets_deleted_at", "deleted_at"),
        Index("idx_media_assets_folder", "folder"),
    )

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "public_id": self.public_id,
            "version": self.version,
            "signature": self.signature,
            "resource_type": self.resource_type,
            "folder": self.folder,
            "tags": list(self.tags or []),
            "original_filename": self.original_filename,
            "display_name": self.display_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "format": self.format,
            "width": self.width,
            "height": self.height,
            "secure_url": self.secure_url,
            "url": self.url,
            "sync_status": self.sync_status,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
