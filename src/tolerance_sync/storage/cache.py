"""Durable local cache for room snapshots and treatment timer state.

The cache is an optimization, never a source of truth: every read or write
failure is logged and reported as "nothing cached" instead of raised.

Two independent backends are used:

- :class:`JsonFileStore` (primary): one JSON file per key, written atomically.
- :class:`JsonIndexStore` (secondary): a single small JSON document holding
  every key, analogous to a preferences file.

The signed-in user profile is kept per identity so a cold start can proceed
while the remote store is unreachable.

Timer state is written to both so losing one file never loses a running
timer; on load the entry with the later end time wins per room.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from tolerance_sync.models import DECODER_VERSION, TreatmentTimer, User, decode_record

logger = logging.getLogger(__name__)

TIMER_STATE_KEY = "timer_state"
ACTIVE_ROOM_KEY = "active_room"
ROOM_SNAPSHOT_KEY = "snapshot"
USER_KEY = "user"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    """Synchronous key -> JSON value persistence used by :class:`LocalCache`."""

    def read(self, key: str) -> Any | None: ...

    def write(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


def _atomic_write_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(value, fh, separators=(",", ":"), default=str)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonFileStore:
    """One JSON file per key below *directory*."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def read(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write(self, key: str, value: Any) -> None:
        _atomic_write_json(self._path(key), value)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class JsonIndexStore:
    """All keys in a single JSON document at *path*."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    def read(self, key: str) -> Any | None:
        return self._load_all().get(key)

    def write(self, key: str, value: Any) -> None:
        data = self._load_all()
        data[key] = value
        _atomic_write_json(self.path, data)

    def delete(self, key: str) -> None:
        data = self._load_all()
        if data.pop(key, None) is not None:
            _atomic_write_json(self.path, data)


class LocalCache:
    """Scoped key-value cache with dual-store timer persistence.

    Parameters
    ----------
    primary:
        Durable per-key store.
    secondary:
        Lightweight backup store; only timer state and the active room id
        are mirrored into it.
    timer_debounce_seconds:
        A timer save arriving within this window of the previous accepted
        save is dropped.
    monotonic:
        Clock used for the debounce window.
    """

    def __init__(
        self,
        primary: KeyValueStore,
        secondary: KeyValueStore,
        *,
        timer_debounce_seconds: float = 0.5,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._debounce = timer_debounce_seconds
        self._monotonic = monotonic
        self._last_save: dict[str, float] = {}

    @classmethod
    def from_directory(cls, directory: Path, *, timer_debounce_seconds: float = 0.5) -> LocalCache:
        directory = Path(directory)
        return cls(
            JsonFileStore(directory / "store"),
            JsonIndexStore(directory / "preferences.json"),
            timer_debounce_seconds=timer_debounce_seconds,
        )

    @staticmethod
    def scoped(key: str, scope: str | None = None) -> str:
        return key if scope is None else f"{scope}::{key}"

    # ------------------------------------------------------------------
    # Generic key/value
    # ------------------------------------------------------------------

    async def save(self, key: str, blob: Any, *, scope: str | None = None) -> bool:
        """Persist *blob* (JSON-serializable) under *key*; ``False`` on failure."""
        return await self._write(self._primary, self.scoped(key, scope), blob)

    async def load(self, key: str, *, scope: str | None = None) -> Any | None:
        return await self._read(self._primary, self.scoped(key, scope))

    async def delete(self, key: str, *, scope: str | None = None) -> None:
        full_key = self.scoped(key, scope)
        try:
            await asyncio.to_thread(self._primary.delete, full_key)
        except OSError:
            logger.warning("Cache delete failed for key=%s", full_key, exc_info=True)

    async def _write(self, store: KeyValueStore, key: str, value: Any) -> bool:
        try:
            await asyncio.to_thread(store.write, key, value)
        except (OSError, TypeError, ValueError):
            logger.warning(
                "Cache write failed for key=%s store=%s", key, type(store).__name__, exc_info=True
            )
            return False
        return True

    async def _read(self, store: KeyValueStore, key: str) -> Any | None:
        try:
            return await asyncio.to_thread(store.read, key)
        except (OSError, ValueError):
            logger.warning(
                "Cache read failed for key=%s store=%s", key, type(store).__name__, exc_info=True
            )
            return None

    # ------------------------------------------------------------------
    # Room snapshots
    # ------------------------------------------------------------------

    async def save_room_snapshot(self, room_id: str, snapshot: dict[str, Any]) -> bool:
        envelope = {
            "version": DECODER_VERSION,
            "savedAt": datetime.now(UTC).isoformat(),
            "data": snapshot,
        }
        return await self.save(ROOM_SNAPSHOT_KEY, envelope, scope=room_id)

    async def load_room_snapshot(self, room_id: str) -> dict[str, Any] | None:
        envelope = await self.load(ROOM_SNAPSHOT_KEY, scope=room_id)
        if not isinstance(envelope, dict):
            return None
        if envelope.get("version") != DECODER_VERSION:
            logger.info(
                "Discarding cached snapshot for room=%s (version %r != %d)",
                room_id,
                envelope.get("version"),
                DECODER_VERSION,
            )
            return None
        data = envelope.get("data")
        return data if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Active room
    # ------------------------------------------------------------------

    async def save_active_room(self, room_id: str | None) -> None:
        for store in (self._primary, self._secondary):
            if room_id is None:
                try:
                    await asyncio.to_thread(store.delete, ACTIVE_ROOM_KEY)
                except OSError:
                    logger.warning("Cache delete failed for key=%s", ACTIVE_ROOM_KEY, exc_info=True)
            else:
                await self._write(store, ACTIVE_ROOM_KEY, room_id)

    async def load_active_room(self) -> str | None:
        for store in (self._primary, self._secondary):
            value = await self._read(store, ACTIVE_ROOM_KEY)
            if isinstance(value, str) and value:
                return value
        return None

    # ------------------------------------------------------------------
    # Signed-in user
    # ------------------------------------------------------------------

    async def save_user(self, auth_id: str, user: User) -> bool:
        envelope = {"version": DECODER_VERSION, "id": user.id, "data": user.to_remote()}
        return await self.save(USER_KEY, envelope, scope=auth_id)

    async def load_user(self, auth_id: str) -> User | None:
        """Last profile resolved for *auth_id*, or ``None``."""
        envelope = await self.load(USER_KEY, scope=auth_id)
        if not isinstance(envelope, dict) or envelope.get("version") != DECODER_VERSION:
            return None
        user_id = envelope.get("id")
        if not isinstance(user_id, str) or not user_id:
            return None
        return decode_record(User, envelope.get("data"), resource="users", key=user_id)

    # ------------------------------------------------------------------
    # Timer state
    # ------------------------------------------------------------------

    async def save_timers(self, timers: dict[str, TreatmentTimer], *, flush: bool = False) -> bool:
        """Write timer state to both stores.

        Returns ``False`` when the save was dropped by the debounce window or
        when both stores failed.  ``flush=True`` bypasses the debounce.
        """
        now = self._monotonic()
        last = self._last_save.get(TIMER_STATE_KEY)
        if not flush and last is not None and now - last < self._debounce:
            logger.debug("Timer save dropped by %.2fs debounce", self._debounce)
            return False
        self._last_save[TIMER_STATE_KEY] = now

        payload = {
            "version": DECODER_VERSION,
            "timers": {room_id: timer.to_remote() for room_id, timer in timers.items()},
        }
        primary_ok = await self._write(self._primary, TIMER_STATE_KEY, payload)
        secondary_ok = await self._write(self._secondary, TIMER_STATE_KEY, payload)
        return primary_ok or secondary_ok

    async def load_timers(self) -> dict[str, TreatmentTimer]:
        """Merge timer state from both stores, later end time winning per room."""
        merged: dict[str, TreatmentTimer] = {}
        for store in (self._primary, self._secondary):
            for room_id, timer in _decode_timer_state(await self._read(store, TIMER_STATE_KEY)):
                current = merged.get(room_id)
                if current is None or timer.end_time > current.end_time:
                    merged[room_id] = timer
        return merged


def _decode_timer_state(payload: Any) -> list[tuple[str, TreatmentTimer]]:
    if not isinstance(payload, dict):
        return []
    timers = payload.get("timers")
    if not isinstance(timers, dict):
        return []
    decoded: list[tuple[str, TreatmentTimer]] = []
    for room_id, raw in timers.items():
        timer = decode_record(TreatmentTimer, raw, resource="timerState")
        if timer is not None:
            decoded.append((str(room_id), timer))
    return decoded
