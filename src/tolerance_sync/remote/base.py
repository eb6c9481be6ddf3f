"""Remote store contract and path/tree helpers shared by the backends.

The remote store is a path-addressed JSON tree.  Reads are one-shot
(:meth:`RemoteStore.get`) or persistent (:meth:`RemoteStore.listen`, which
delivers the *full* subtree value on every change).  Writes are full-value
``set``, multi-path ``update`` (``None`` deletes) and ``remove``.  There are
no transactions.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any, Protocol

SnapshotCallback = Callable[[Any], None]


class Subscription(Protocol):
    """Handle for a persistent listener."""

    def close(self) -> None:
        """Stop delivering snapshots.  Idempotent."""
        ...


class RemoteStore(Protocol):
    """Protocol for remote tree backends."""

    async def get(self, path: str) -> Any:
        """Return the current value at *path* (``None`` when absent)."""
        ...

    async def set(self, path: str, value: Any) -> None:
        """Replace the value at *path*; ``None`` removes it."""
        ...

    async def update(self, path: str, values: dict[str, Any]) -> None:
        """Apply several relative-path writes below *path* in one call."""
        ...

    async def remove(self, path: str) -> None:
        """Delete the subtree at *path*."""
        ...

    def listen(self, path: str, callback: SnapshotCallback) -> Subscription:
        """Subscribe to full-subtree snapshots of *path*.

        *callback* runs on the event loop that called ``listen``; the first
        invocation carries the current value.
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def split_path(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def join_path(*parts: str | None) -> str:
    segments: list[str] = []
    for part in parts:
        if part:
            segments.extend(split_path(part))
    return "/".join(segments)


def is_prefix(prefix: list[str], path: list[str]) -> bool:
    return len(prefix) <= len(path) and path[: len(prefix)] == prefix


# ---------------------------------------------------------------------------
# JSON tree helpers
# ---------------------------------------------------------------------------


def prune(value: Any) -> Any:
    """Drop ``None`` leaves and empty containers, as the remote tree does."""
    if isinstance(value, dict):
        cleaned = {str(k): prune(v) for k, v in value.items()}
        cleaned = {k: v for k, v in cleaned.items() if v is not None}
        return cleaned or None
    if isinstance(value, list):
        cleaned_list = [prune(v) for v in value]
        if all(v is None for v in cleaned_list):
            return None
        return cleaned_list
    return value


def tree_get(root: Any, parts: list[str]) -> Any:
    node = root
    for part in parts:
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
        if node is None:
            return None
    return copy.deepcopy(node)


def tree_set(root: dict[str, Any], parts: list[str], value: Any) -> dict[str, Any]:
    """Write *value* at *parts* below *root*, returning the (possibly new) root.

    Lists met on the way are converted to index-keyed dicts, and empty
    parents are pruned after a delete.
    """
    value = prune(copy.deepcopy(value))
    if not parts:
        return value if isinstance(value, dict) else {}

    def _write(node: Any, remaining: list[str]) -> Any:
        if isinstance(node, list):
            node = {str(i): v for i, v in enumerate(node) if v is not None}
        if not isinstance(node, dict):
            node = {}
        head, rest = remaining[0], remaining[1:]
        if rest:
            child = _write(node.get(head), rest)
        else:
            child = value
        if child is None:
            node.pop(head, None)
        else:
            node[head] = child
        return node or None

    return _write(root, parts) or {}
