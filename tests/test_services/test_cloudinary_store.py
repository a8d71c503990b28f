"""Tests for the Cloudinary asset store client."""

from __future__ import annotations

import hashlib
import json

import httpx
import pytest

from mediasync.store.base import (
    AssetDescriptor,
    AssetNotFoundError,
    AssetStore,
    PermanentStoreError,
    TransientStoreError,
)
from mediasync.store.cloudinary import (
    CloudinaryStore,
    api_sign_request,
    verify_notification_signature,
)

SECRET = "shh"


def _resource(public_id: str, **extra: object) -> dict[str, object]:
    data: dict[str, object] = {
        "public_id": public_id,
        "version": 3,
        "signature": f"sig-{public_id}",
        "resource_type": "image",
        "format": "png",
        "bytes": 2048,
        "width": 10,
        "height": 20,
        "secure_url": f"https://res.cloudinary.com/demo/{public_id}.png",
        "tags": ["a", "b"],
        "created_at": "2026-02-02T22:21:29Z",
    }
    data.update(extra)
    return data


def _store(handler) -> CloudinaryStore:  # type: ignore[no-untyped-def]
    return CloudinaryStore(
        "demo",
        "key",
        SECRET,
        base_url="https://api.example.test/v1_1",
        transport=httpx.MockTransport(handler),
    )


class TestDescriptorParsing:
    def test_from_api_full(self) -> None:
        d = AssetDescriptor.from_api(_resource("products/shoe"))
        assert d.public_id == "products/shoe"
        assert d.version == 3
        assert d.tags == ("a", "b")
        assert d.folder == "products"
        assert d.created_at is not None
        assert d.created_at.year == 2026

    def test_asset_folder_wins(self) -> None:
        d = AssetDescriptor.from_api(_resource("shoe", asset_folder="catalog"))
        assert d.folder == "catalog"

    def test_missing_public_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="public_id"):
            AssetDescriptor.from_api({"version": 1})

    def test_tags_must_be_list(self) -> None:
        with pytest.raises(ValueError, match="tags"):
            AssetDescriptor.from_api(_resource("x", tags="a,b"))


class TestListAssets:
    async def test_list_passes_cursor_and_filters(self) -> None:
        seen: list[dict[str, object]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1_1/demo/resources/search"
            assert request.headers["authorization"].startswith("Basic ")
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "resources": [_resource("one"), _resource("two")],
                    "next_cursor": "abc",
                    "total_count": 5,
                },
            )

        store = _store(handler)
        page = await store.list_assets("prev", 2, resource_type="video", folder="clips")
        await store.aclose()

        assert [d.public_id for d in page.items] == ["one", "two"]
        assert page.next_cursor == "abc"
        assert page.total_count == 5
        body = seen[0]
        assert body["max_results"] == 2
        assert body["next_cursor"] == "prev"
        assert body["expression"] == 'resource_type:video AND folder="clips"'

    async def test_page_size_clamped(self) -> None:
        seen: list[dict[str, object]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"resources": []})

        store = _store(handler)
        page = await store.list_assets(page_size=10_000)
        assert seen[0]["max_results"] == 500
        assert "expression" not in seen[0]
        assert page.next_cursor is None
        assert page.items == []

    async def test_server_error_is_transient(self) -> None:
        store = _store(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(TransientStoreError) as exc_info:
            await store.list_assets()
        assert exc_info.value.retryable
        assert exc_info.value.code == 502

    async def test_rate_limit_is_transient(self) -> None:
        store = _store(
            lambda request: httpx.Response(420, json={"error": {"message": "Rate Limited"}})
        )
        with pytest.raises(TransientStoreError, match="Rate Limited"):
            await store.list_assets()

    async def test_bad_credentials_are_permanent(self) -> None:
        store = _store(
            lambda request: httpx.Response(401, json={"error": {"message": "Invalid api_key"}})
        )
        with pytest.raises(PermanentStoreError, match="Invalid api_key") as exc_info:
            await store.list_assets()
        assert not exc_info.value.retryable

    async def test_timeout_retried_once(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"resources": [_resource("late")]})

        page = await _store(handler).list_assets()
        assert calls == 2
        assert page.items[0].public_id == "late"

    async def test_repeated_timeout_is_transient(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectTimeout("down", request=request)

        with pytest.raises(TransientStoreError, match="Timed out"):
            await _store(handler).list_assets()
        assert calls == 2

    async def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientStoreError, match="Network error"):
            await _store(handler).list_assets()


class TestGetAsset:
    async def test_probes_resource_types(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if "/video/" in request.url.path:
                return httpx.Response(200, json=_resource("clip", resource_type="video"))
            return httpx.Response(404, json={"error": {"message": "Resource not found"}})

        d = await _store(handler).get_asset("clip")
        assert d.resource_type == "video"
        assert paths == [
            "/v1_1/demo/resources/image/upload/clip",
            "/v1_1/demo/resources/video/upload/clip",
        ]

    async def test_not_found_anywhere(self) -> None:
        store = _store(lambda request: httpx.Response(404, json={}))
        with pytest.raises(AssetNotFoundError):
            await store.get_asset("ghost")

    async def test_explicit_type_skips_probe(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(404, json={})

        with pytest.raises(AssetNotFoundError):
            await _store(handler).get_asset("doc", "raw")
        assert paths == ["/v1_1/demo/resources/raw/upload/doc"]


class TestDeleteAsset:
    async def test_deleted(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            assert request.url.params["public_ids[]"] == "x"
            return httpx.Response(200, json={"deleted": {"x": "deleted"}})

        result = await _store(handler).delete_asset("x")
        assert result.ok
        assert not result.not_found

    async def test_not_found_is_success(self) -> None:
        store = _store(lambda request: httpx.Response(200, json={"deleted": {"x": "not_found"}}))
        result = await store.delete_asset("x")
        assert result.ok
        assert result.not_found

    async def test_http_404_is_success(self) -> None:
        result = await _store(lambda request: httpx.Response(404)).delete_asset("x")
        assert result.not_found

    async def test_unexpected_outcome_is_permanent(self) -> None:
        store = _store(lambda request: httpx.Response(200, json={"deleted": {}}))
        with pytest.raises(PermanentStoreError):
            await store.delete_asset("x")

    async def test_server_error_is_transient(self) -> None:
        store = _store(lambda request: httpx.Response(503))
        with pytest.raises(TransientStoreError):
            await store.delete_asset("x", "video")


class TestUpload:
    async def test_signed_upload(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1_1/demo/image/upload"
            body = request.content.decode(errors="replace")
            assert 'name="signature"' in body
            assert 'name="api_key"' in body
            return httpx.Response(200, json=_resource("uploads/new", asset_folder="uploads"))

        d = await _store(handler).upload_asset(
            b"bytes", folder="uploads", tags=["t"], filename="new.png", resource_type="image"
        )
        assert d.public_id == "uploads/new"
        assert d.folder == "uploads"


class TestSignatures:
    def test_sign_request_sorts_and_skips_empty(self) -> None:
        expected = hashlib.sha1(b"folder=f&tags=a,b&timestamp=10" + SECRET.encode()).hexdigest()
        params = {"timestamp": 10, "tags": ["a", "b"], "folder": "f", "empty": ""}
        assert api_sign_request(params, SECRET) == expected

    def test_notification_signature(self) -> None:
        body = b'{"notification_type":"upload"}'
        ts = "1700000000"
        sig = hashlib.sha1(body + ts.encode() + SECRET.encode()).hexdigest()
        assert verify_notification_signature(body, ts, sig, SECRET, now=1700000100)
        assert not verify_notification_signature(body, ts, sig, "other", now=1700000100)
        assert not verify_notification_signature(body + b" ", ts, sig, SECRET, now=1700000100)

    def test_notification_signature_expires(self) -> None:
        body = b"{}"
        ts = "1700000000"
        sig = hashlib.sha1(body + ts.encode() + SECRET.encode()).hexdigest()
        assert not verify_notification_signature(
            body, ts, sig, SECRET, max_age_seconds=60, now=1700000061
        )

    def test_notification_signature_rejects_garbage(self) -> None:
        assert not verify_notification_signature(b"{}", "soon", "abc", SECRET)
        assert not verify_notification_signature(b"{}", "1", "", SECRET)


class TestConstruction:
    def test_requires_credentials(self) -> None:
        with pytest.raises(ValueError, match="credentials"):
            CloudinaryStore("demo", "", "secret")

    def test_satisfies_protocol(self) -> None:
        store = _store(lambda request: httpx.Response(200))
        assert isinstance(store, AssetStore)
