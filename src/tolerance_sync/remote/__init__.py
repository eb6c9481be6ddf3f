"""Remote tree backends.

The Firebase backend is imported from :mod:`tolerance_sync.remote.firebase`
directly so that the in-memory backend works without Firebase credentials.
"""

from tolerance_sync.remote.base import RemoteStore, SnapshotCallback, Subscription, join_path
from tolerance_sync.remote.memory import MemoryRemoteStore

__all__ = ["MemoryRemoteStore", "RemoteStore", "SnapshotCallback", "Subscription", "join_path"]
