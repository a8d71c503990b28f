"""Pending store-side deletions."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mediasync.models.base import Base, UTCDateTime


class CleanupStatus(StrEnum):
    """Lifecycle: pending -> processing -> done | pending (retry) | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


OPEN_CLEANUP_STATUSES = (CleanupStatus.PENDING, CleanupStatus.PROCESSING)


class CleanupQueueItem(Base):
    """A deletion obligation against the asset store."""

    __tablename__ = "cloudinary_cleanup_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cloudinary_public_id: Mapped[str] = mapped_column(String(512), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(16), nullable=False, default="image")
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_source: Mapped[str] = mapped_column(String(32), nullable=False, default="system")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=CleanupStatus.PENDING
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_cleanup_queue_status_next", "status", "next_attempt_at"),
        Index("idx_cleanup_queue_public_id", "cloudinary_public_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cloudinary_public_id": self.cloudinary_public_id,
            "resource_type": self.resource_type,
            "reason": self.reason,
            "trigger_source": self.trigger_source,
            "attempts": self.attempts,
            "status": self.status,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "next_attempt_at": self.next_attempt_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
