"""Tests for the local blob store and cycle profile images."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from tolerance_sync.images import ProfileImages, profile_image_key
from tolerance_sync.models import User
from tolerance_sync.remote.memory import MemoryRemoteStore
from tolerance_sync.storage.blobs import LocalBlobStore
from tolerance_sync.store import EntityStore
from tolerance_sync.sync import RemoteSync

from conftest import CYCLE_ID, ROOM_ID, USER_ID, room_tree

pytestmark = pytest.mark.unit


class TestLocalBlobStore:
    """Test LocalBlobStore implementation."""

    @pytest.fixture
    def blob_store(self, tmp_path):
        return LocalBlobStore(base_dir=tmp_path)

    async def test_put_and_get_roundtrip(self, blob_store):
        await blob_store.put("profileImages/C1.jpg", b"jpeg-bytes")
        assert await blob_store.get("profileImages/C1.jpg") == b"jpeg-bytes"

    async def test_get_missing_returns_none(self, blob_store):
        assert await blob_store.get("profileImages/none.jpg") is None

    async def test_delete_is_idempotent(self, blob_store):
        await blob_store.put("a/b.bin", b"x")
        await blob_store.delete("a/b.bin")
        await blob_store.delete("a/b.bin")
        assert await blob_store.get("a/b.bin") is None

    async def test_path_traversal_rejected(self, blob_store):
        with pytest.raises(ValueError, match="Path traversal"):
            await blob_store.put("../outside.bin", b"x")

    def test_empty_key_rejected(self, blob_store):
        with pytest.raises(ValueError, match="non-empty"):
            blob_store.url_for("/")

    def test_url_is_file_uri(self, blob_store, tmp_path: Path):
        assert blob_store.url_for("k.jpg") == (tmp_path.resolve() / "k.jpg").as_uri()


# ---------------------------------------------------------------------------
# ProfileImages
# ---------------------------------------------------------------------------


@pytest.fixture
def room_sync(clock, config):
    remote = MemoryRemoteStore({"rooms": {ROOM_ID: room_tree()}})
    store = EntityStore()
    sync = RemoteSync(remote, store, clock, config=config.remote)
    sync.user = User(id=USER_ID, name="Alex", is_admin=True)
    sync.attach(ROOM_ID)
    return remote, store, sync


def _images(store, sync, tmp_path: Path, client: httpx.AsyncClient | None = None):
    return ProfileImages(
        blobs=LocalBlobStore(tmp_path / "shared"),
        cache=LocalBlobStore(tmp_path / "device"),
        store=store,
        sync=sync,
        http_client=client,
    )


class TestProfileImages:
    async def test_upload_stores_blob_and_sets_cycle_url(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        images = _images(store, sync, tmp_path)

        assert await images.upload(CYCLE_ID, b"jpeg")

        shared = LocalBlobStore(tmp_path / "shared")
        assert await shared.get(profile_image_key(CYCLE_ID)) == b"jpeg"
        url = remote.snapshot(f"rooms/{ROOM_ID}/cycles/{CYCLE_ID}/profileImageURL")
        assert url == shared.url_for(profile_image_key(CYCLE_ID))
        assert store.cycle(CYCLE_ID).profile_image_url == url
        # Items nested under the cycle survive the cycle edit.
        assert remote.snapshot(f"rooms/{ROOM_ID}/cycles/{CYCLE_ID}/items/ITEM-T1") is not None
        await images.close()

    async def test_upload_for_unknown_cycle_is_refused(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        images = _images(store, sync, tmp_path)
        assert await images.upload("NOPE", b"jpeg") is False
        await images.close()

    async def test_download_prefers_device_cache(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        images = _images(store, sync, tmp_path)
        await LocalBlobStore(tmp_path / "device").put(profile_image_key(CYCLE_ID), b"cached")
        assert await images.download(CYCLE_ID) == b"cached"
        await images.close()

    async def test_download_from_http_url_fills_cache(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        requested: list[str] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=b"remote-jpeg")

        client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
        images = _images(store, sync, tmp_path, client)
        await sync.set_profile_image_url(CYCLE_ID, "https://img.example/c1.jpg")

        assert await images.download(CYCLE_ID) == b"remote-jpeg"
        assert requested == ["https://img.example/c1.jpg"]
        device = LocalBlobStore(tmp_path / "device")
        assert await device.get(profile_image_key(CYCLE_ID)) == b"remote-jpeg"
        await client.aclose()

    async def test_download_http_error_returns_none(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(404))
        )
        images = _images(store, sync, tmp_path, client)
        await sync.set_profile_image_url(CYCLE_ID, "https://img.example/missing.jpg")
        assert await images.download(CYCLE_ID) is None
        await client.aclose()

    async def test_download_without_url_returns_none(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        images = _images(store, sync, tmp_path)
        assert await images.download(CYCLE_ID) is None
        await images.close()

    async def test_delete_clears_blob_cache_and_url(self, room_sync, tmp_path):
        remote, store, sync = room_sync
        images = _images(store, sync, tmp_path)
        await images.upload(CYCLE_ID, b"jpeg")

        await images.delete(CYCLE_ID)

        assert await LocalBlobStore(tmp_path / "device").get(profile_image_key(CYCLE_ID)) is None
        assert remote.snapshot(f"rooms/{ROOM_ID}/cycles/{CYCLE_ID}/profileImageURL") is None
        assert store.cycle(CYCLE_ID).profile_image_url is None
        await images.close()
