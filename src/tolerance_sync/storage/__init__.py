"""Local persistence: blob storage and the durable sync cache."""

from tolerance_sync.storage.blobs import BlobStore, LocalBlobStore
from tolerance_sync.storage.cache import JsonFileStore, JsonIndexStore, KeyValueStore, LocalCache

__all__ = [
    "BlobStore",
    "JsonFileStore",
    "JsonIndexStore",
    "KeyValueStore",
    "LocalBlobStore",
    "LocalCache",
]
