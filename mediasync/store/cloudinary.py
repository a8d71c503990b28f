"""Cloudinary implementation of the asset store using the Admin and Upload HTTP APIs."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from mediasync.store.base import (
    AssetDescriptor,
    AssetNotFoundError,
    AssetPage,
    DeleteResult,
    PermanentStoreError,
    TransientStoreError,
)

if TYPE_CHECKING:
    from mediasync.config import Settings

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ("image", "video", "raw")
MAX_PAGE_SIZE = 500
# 420 is Cloudinary's rate-limit status on the Admin API.
_TRANSIENT_STATUSES = frozenset({408, 420, 429})


def api_sign_request(params: dict[str, Any], api_secret: str) -> str:
    """Sign request parameters the way the Upload API expects.

    Parameters are sorted by key, joined as ``k=v`` with ``&`` and the secret is
    appended before hashing. Empty values are skipped.
    """
    to_sign = "&".join(
        f"{key}={_sign_value(value)}"
        for key, value in sorted(params.items())
        if value not in (None, "", [])
    )
    return hashlib.sha1(f"{to_sign}{api_secret}".encode()).hexdigest()


def _sign_value(value: Any) -> str:
    if isinstance(value, list | tuple):
        return ",".join(str(item) for item in value)
    return str(value)


def verify_notification_signature(
    body: bytes,
    timestamp: str,
    signature: str,
    api_secret: str,
    *,
    max_age_seconds: int = 7200,
    now: float | None = None,
) -> bool:
    """Check an ``X-Cld-Signature`` header against the raw notification body."""
    if not body or not timestamp or not signature or not api_secret:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > max_age_seconds:
        return False
    expected = hashlib.sha1(body + timestamp.encode() + api_secret.encode()).hexdigest()
    return hmac.compare_digest(expected, signature)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return f"HTTP {response.status_code}"


def _raise_for_status(response: httpx.Response, public_id: str | None = None) -> None:
    status = response.status_code
    if status < 400:
        return
    message = _error_message(response)
    if status == 404:
        raise AssetNotFoundError(
            f"Asset not found: {public_id}" if public_id else message, code=status
        )
    if status in _TRANSIENT_STATUSES or status >= 500:
        raise TransientStoreError(message, code=status)
    raise PermanentStoreError(message, code=status)


class CloudinaryStore:
    """Asset store client for a single Cloudinary cloud.

    Every request has a bounded timeout; a timed-out request is retried once
    before surfacing as a transient failure.
    """

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = "https://api.cloudinary.com/v1_1",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not cloud_name or not api_key or not api_secret:
            raise ValueError("Cloudinary credentials are not configured")
        self.cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/{cloud_name}",
            auth=(api_key, api_secret),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> CloudinaryStore:
        return cls(
            settings.cloudinary_cloud_name,
            settings.cloudinary_api_key,
            settings.cloudinary_api_secret,
            base_url=settings.cloudinary_api_base_url,
            timeout=settings.store_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        for attempt in (1, 2):
            try:
                return await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                if attempt == 2:
                    raise TransientStoreError(f"Timed out calling {url}") from exc
                logger.warning("Cloudinary request timed out, retrying once: %s %s", method, url)
            except httpx.TransportError as exc:
                raise TransientStoreError(f"Network error calling {url}: {exc}") from exc
        raise AssertionError("unreachable")

    async def list_assets(
        self,
        cursor: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
        *,
        resource_type: str | None = None,
        folder: str | None = None,
    ) -> AssetPage:
        """List live assets through the Search API, newest first."""
        clauses: list[str] = []
        if resource_type:
            clauses.append(f"resource_type:{resource_type}")
        if folder:
            clauses.append(f'folder="{folder}"')
        body: dict[str, Any] = {
            "max_results": max(1, min(page_size, MAX_PAGE_SIZE)),
            "sort_by": [{"created_at": "desc"}],
            "with_field": ["tags"],
        }
        if clauses:
            body["expression"] = " AND ".join(clauses)
        if cursor:
            body["next_cursor"] = cursor

        response = await self._request("POST", "/resources/search", json=body)
        _raise_for_status(response)
        payload = response.json()
        resources = payload.get("resources") or []
        return AssetPage(
            items=[AssetDescriptor.from_api(item) for item in resources],
            next_cursor=payload.get("next_cursor") or None,
            total_count=payload.get("total_count"),
        )

    async def get_asset(self, public_id: str, resource_type: str | None = None) -> AssetDescriptor:
        """Fetch one asset, probing every resource type when none is given."""
        candidates = (resource_type,) if resource_type else RESOURCE_TYPES
        for candidate in candidates:
            response = await self._request("GET", f"/resources/{candidate}/upload/{public_id}")
            if response.status_code == 404:
                continue
            _raise_for_status(response, public_id)
            return AssetDescriptor.from_api(response.json())
        raise AssetNotFoundError(f"Asset not found: {public_id}", code=404)

    async def delete_asset(self, public_id: str, resource_type: str = "image") -> DeleteResult:
        """Delete one asset. ``not found`` counts as success."""
        response = await self._request(
            "DELETE",
            f"/resources/{resource_type}/upload",
            params={"public_ids[]": public_id},
        )
        if response.status_code == 404:
            return DeleteResult(public_id=public_id, ok=True, not_found=True)
        _raise_for_status(response, public_id)
        outcome = (response.json().get("deleted") or {}).get(public_id)
        if outcome == "deleted":
            return DeleteResult(public_id=public_id, ok=True)
        if outcome in ("not_found", "not found"):
            return DeleteResult(public_id=public_id, ok=True, not_found=True)
        raise PermanentStoreError(f"Unexpected delete result for {public_id}: {outcome!r}")

    async def upload_asset(
        self,
        data: bytes,
        *,
        folder: str | None = None,
        tags: list[str] | None = None,
        filename: str | None = None,
        resource_type: str = "auto",
    ) -> AssetDescriptor:
        params: dict[str, Any] = {"timestamp": int(time.time())}
        if folder:
            params["folder"] = folder
        if tags:
            params["tags"] = ",".join(tags)
        params["signature"] = api_sign_request(params, self._api_secret)
        params["api_key"] = self._api_key

        response = await self._request(
            "POST",
            f"/{resource_type}/upload",
            data={key: str(value) for key, value in params.items()},
            files={"file": (filename or "upload", data)},
        )
        _raise_for_status(response)
        descriptor = AssetDescriptor.from_api(response.json())
        logger.info("Uploaded asset %s (%s)", descriptor.public_id, descriptor.resource_type)
        return descriptor
