"""Blob storage abstraction with local filesystem backend.

Profile images and other binary attachments are addressed by a caller-chosen
key such as ``profileImages/<cycleId>.jpg``.  The local backend doubles as the
on-device image cache.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Protocol for blob storage backends."""

    async def put(self, key: str, data: bytes) -> None:
        """Store *data* under *key*, replacing any previous blob."""
        ...

    async def get(self, key: str) -> bytes | None:
        """Return the blob stored under *key*, or ``None`` when absent."""
        ...

    async def delete(self, key: str) -> None:
        """Delete the blob under *key*; deleting a missing key is a no-op."""
        ...

    def url_for(self, key: str) -> str:
        """Return a URL another device can use to fetch *key*."""
        ...


class LocalBlobStore:
    """Filesystem-backed blob store.

    Keys map to relative paths below ``base_dir``.

    Args:
        base_dir: Root directory for blob storage
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir).resolve()

    def _key_to_path(self, key: str) -> Path:
        """Convert a key to a filesystem path.

        Raises:
            ValueError: If the key is empty or attempts path traversal
        """
        if not key or not key.strip("/"):
            raise ValueError("Blob key must be a non-empty string")

        resolved_path = (self.base_dir / key.lstrip("/")).resolve()

        try:
            resolved_path.relative_to(self.base_dir)
        except ValueError as e:
            msg = f"Path traversal attempt detected: {key}"
            raise ValueError(msg) from e

        return resolved_path

    async def put(self, key: str, data: bytes) -> None:
        file_path = self._key_to_path(key)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_bytes, data)

    async def get(self, key: str) -> bytes | None:
        file_path = self._key_to_path(key)
        if not file_path.exists():
            return None
        return await asyncio.to_thread(file_path.read_bytes)

    async def delete(self, key: str) -> None:
        file_path = self._key_to_path(key)
        try:
            file_path.unlink()
        except FileNotFoundError:
            logger.debug("Blob %s already absent", key)

    def url_for(self, key: str) -> str:
        return self._key_to_path(key).as_uri()
