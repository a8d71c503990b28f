"""Asset store boundary: descriptors, error taxonomy and the client protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from mediasync.services.datetime_service import parse_store_timestamp

if TYPE_CHECKING:
    from datetime import datetime


class AssetStoreError(Exception):
    """Base class for failures talking to the asset store."""

    def __init__(self, message: str, *, code: int | str | None = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def retryable(self) -> bool:
        return False


class TransientStoreError(AssetStoreError):
    """Network failure, timeout, rate limit or 5xx. Safe to retry later."""

    @property
    def retryable(self) -> bool:
        return True


class PermanentStoreError(AssetStoreError):
    """Bad credentials or a rejected request. Retrying will not help."""


class AssetNotFoundError(PermanentStoreError):
    """The requested public id does not exist in the store."""


@dataclass(frozen=True)
class AssetDescriptor:
    """Canonical view of one store object."""

    public_id: str
    version: int | None = None
    signature: str | None = None
    resource_type: str = "image"
    format: str | None = None
    bytes: int | None = None
    width: int | None = None
    height: int | None = None
    url: str | None = None
    secure_url: str | None = None
    folder: str | None = None
    tags: tuple[str, ...] = ()
    original_filename: str | None = None
    display_name: str | None = None
    etag: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> AssetDescriptor:
        """Build a descriptor from a store API resource payload.

        Raises ValueError for payloads without a usable public id.
        """
        public_id = data.get("public_id")
        if not isinstance(public_id, str) or not public_id:
            msg = f"Malformed asset descriptor: missing public_id in {sorted(data)!r}"
            raise ValueError(msg)

        version = data.get("version")
        raw_tags = data.get("tags") or []
        if not isinstance(raw_tags, list):
            msg = f"Malformed asset descriptor for {public_id}: tags must be a list"
            raise ValueError(msg)

        folder = data.get("asset_folder") or data.get("folder")
        if not folder and "/" in public_id:
            folder = public_id.rsplit("/", 1)[0]

        return cls(
            public_id=public_id,
            version=int(version) if version is not None else None,
            signature=data.get("signature"),
            resource_type=data.get("resource_type") or "image",
            format=data.get("format"),
            bytes=data.get("bytes"),
            width=data.get("width"),
            height=data.get("height"),
            url=data.get("url"),
            secure_url=data.get("secure_url"),
            folder=folder or None,
            tags=tuple(str(tag) for tag in raw_tags),
            original_filename=data.get("original_filename"),
            display_name=data.get("display_name"),
            etag=data.get("etag"),
            created_at=parse_store_timestamp(data.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Client-facing view, timestamps as ISO strings."""
        return {
            "public_id": self.public_id,
            "version": self.version,
            "signature": self.signature,
            "resource_type": self.resource_type,
            "format": self.format,
            "bytes": self.bytes,
            "width": self.width,
            "height": self.height,
            "url": self.url,
            "secure_url": self.secure_url,
            "folder": self.folder,
            "tags": list(self.tags),
            "original_filename": self.original_filename,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class AssetPage:
    """One page of a store listing."""

    items: list[AssetDescriptor] = field(default_factory=list)
    next_cursor: str | None = None
    total_count: int | None = None


@dataclass
class DeleteResult:
    """Outcome of a store deletion that did not raise."""

    public_id: str
    ok: bool
    not_found: bool = False


@runtime_checkable
class AssetStore(Protocol):
    """Operations the sync core needs from the asset store."""

    async def list_assets(
        self,
        cursor: str | None = None,
        page_size: int = 500,
        *,
        resource_type: str | None = None,
        folder: str | None = None,
    ) -> AssetPage:
        """Return one page of live assets, newest first."""
        ...

    async def get_asset(self, public_id: str, resource_type: str | None = None) -> AssetDescriptor:
        """Fetch one asset. Raises AssetNotFoundError when it does not exist."""
        ...

    async def delete_asset(self, public_id: str, resource_type: str = "image") -> DeleteResult:
        """Delete one asset. A missing asset is reported, not raised."""
        ...

    async def upload_asset(
        self,
        data: bytes,
        *,
        folder: str | None = None,
        tags: list[str] | None = None,
        filename: str | None = None,
        resource_type: str = "auto",
    ) -> AssetDescriptor:
        """Upload bytes and return the stored asset descriptor."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
