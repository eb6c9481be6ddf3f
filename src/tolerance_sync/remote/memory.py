"""In-process remote store for development and tests.

Behaves like the hosted tree: writes are visible immediately, every listener
whose subtree was touched receives the full subtree value, and listeners get
the current value as soon as they are registered (or, while offline, on
``reconnect``).  Failure injection hooks
(``fail_next``, ``offline``, ``latency``) exercise the rollback and retry paths.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from tolerance_sync.remote.base import (
    SnapshotCallback,
    is_prefix,
    join_path,
    split_path,
    tree_get,
    tree_set,
)

logger = logging.getLogger(__name__)


class _MemorySubscription:
    def __init__(self, store: MemoryRemoteStore, listener_id: int) -> None:
        self._store = store
        self._listener_id = listener_id

    def close(self) -> None:
        self._store._listeners.pop(self._listener_id, None)


class MemoryRemoteStore:
    """Dict-backed :class:`~tolerance_sync.remote.base.RemoteStore`."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._root: dict[str, Any] = tree_set({}, [], initial or {})
        self._listeners: dict[int, tuple[list[str], SnapshotCallback]] = {}
        self._next_listener_id = 0
        self._failures: list[Exception] = []
        self.offline = False
        self.latency: float = 0.0
        self.writes: list[tuple[str, str, Any]] = []

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail_next(self, count: int = 1, exc: Exception | None = None) -> None:
        """Make the next *count* operations raise *exc* (default ConnectionError)."""
        for _ in range(count):
            self._failures.append(exc or ConnectionError("simulated remote failure"))

    async def _enter(self, operation: str, path: str) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise ConnectionError(f"remote store offline ({operation} {path})")
        if self._failures:
            raise self._failures.pop(0)

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        await self._enter("get", path)
        return tree_get(self._root, split_path(path))

    async def set(self, path: str, value: Any) -> None:
        await self._enter("set", path)
        self.writes.append(("set", path, value))
        parts = split_path(path)
        self._root = tree_set(self._root, parts, value)
        self._notify([parts])

    async def update(self, path: str, values: dict[str, Any]) -> None:
        await self._enter("update", path)
        self.writes.append(("update", path, values))
        touched: list[list[str]] = []
        for relative, value in values.items():
            parts = split_path(join_path(path, relative))
            self._root = tree_set(self._root, parts, value)
            touched.append(parts)
        self._notify(touched)

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    def listen(self, path: str, callback: SnapshotCallback) -> _MemorySubscription:
        parts = split_path(path)
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = (parts, callback)
        if not self.offline:
            _deliver(callback, tree_get(self._root, parts))
        return _MemorySubscription(self, listener_id)

    def reconnect(self) -> None:
        """Go back online, delivering current values to every listener."""
        self.offline = False
        for parts, callback in list(self._listeners.values()):
            _deliver(callback, tree_get(self._root, parts))

    async def close(self) -> None:
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def listener_paths(self) -> list[str]:
        return sorted("/".join(parts) for parts, _ in self._listeners.values())

    def snapshot(self, path: str = "") -> Any:
        """Synchronous read for assertions."""
        return tree_get(self._root, split_path(path))

    def _notify(self, touched: list[list[str]]) -> None:
        for listener_id in list(self._listeners):
            entry = self._listeners.get(listener_id)
            if entry is None:
                continue
            parts, callback = entry
            if any(is_prefix(parts, t) or is_prefix(t, parts) for t in touched):
                _deliver(callback, tree_get(self._root, parts))


def _deliver(callback: Callable[[Any], None], value: Any) -> None:
    try:
        callback(value)
    except Exception:
        logger.exception("Remote listener callback failed")
