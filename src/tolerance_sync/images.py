"""Cycle profile images.

Images are stored in the shared blob store at ``profileImages/<cycleId>.jpg``
and the resulting URL is written to the cycle's ``profileImageURL``.  A
local blob store acts as the on-device cache; downloads check it first.
"""

from __future__ import annotations

import logging

import httpx

from tolerance_sync.storage.blobs import BlobStore
from tolerance_sync.store import EntityStore
from tolerance_sync.sync import RemoteSync

logger = logging.getLogger(__name__)

_HTTP_SCHEMES = ("http://", "https://")


def profile_image_key(cycle_id: str) -> str:
    return f"profileImages/{cycle_id}.jpg"


class ProfileImages:
    """Upload, download and delete profile images for cycles of the active room."""

    def __init__(
        self,
        *,
        blobs: BlobStore,
        cache: BlobStore,
        store: EntityStore,
        sync: RemoteSync,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._blobs = blobs
        self._cache = cache
        self._store = store
        self._sync = sync
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    async def upload(self, cycle_id: str, data: bytes) -> bool:
        """Store *data* and point the cycle at it; ``False`` when nothing was saved."""
        if self._store.cycle(cycle_id) is None:
            return False
        key = profile_image_key(cycle_id)
        try:
            await self._blobs.put(key, data)
        except Exception:
            logger.exception("Profile image upload failed for cycle %s", cycle_id)
            return False
        await self._cache.put(key, data)

        result = await self._sync.set_profile_image_url(cycle_id, self._blobs.url_for(key))
        return result is not None and result.ok

    async def download(self, cycle_id: str) -> bytes | None:
        """Return the image from the local cache, the stored URL, or the blob store."""
        key = profile_image_key(cycle_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        cycle = self._store.cycle(cycle_id)
        if cycle is None or not cycle.profile_image_url:
            return None

        if cycle.profile_image_url.startswith(_HTTP_SCHEMES):
            data = await self._fetch(cycle.profile_image_url)
        else:
            data = await self._blobs.get(key)
        if data is not None:
            await self._cache.put(key, data)
        return data

    async def delete(self, cycle_id: str) -> None:
        key = profile_image_key(cycle_id)
        await self._blobs.delete(key)
        await self._cache.delete(key)
        cycle = self._store.cycle(cycle_id)
        if cycle is not None and cycle.profile_image_url:
            await self._sync.set_profile_image_url(cycle_id, None)

    async def _fetch(self, url: str) -> bytes | None:
        try:
            response = await self._http_client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Profile image download failed from %s: %s", url, exc)
            return None
        return response.content
