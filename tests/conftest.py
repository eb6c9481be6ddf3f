"""Shared fixtures for the tolerance_sync test suite."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from tolerance_sync.config import CacheConfig, RemoteConfig, StorageConfig, SyncConfig
from tolerance_sync.core.clock import Clock
from tolerance_sync.notifications import NotificationPayload
from tolerance_sync.remote.memory import MemoryRemoteStore
from tolerance_sync.session import SyncContext
from tolerance_sync.storage.blobs import LocalBlobStore
from tolerance_sync.storage.cache import LocalCache

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)

ROOM_ID = "ROOM-A"
USER_ID = "USER-1"
CYCLE_ID = "CYCLE-1"


class FakeClock(Clock):
    """Clock whose "now" only moves when a test moves it."""

    def __init__(self, now: datetime = NOW, tz=UTC) -> None:
        super().__init__(tz)
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


class RecordingNotificationPort:
    """In-memory notification port that records every call."""

    def __init__(self) -> None:
        self.pending: dict[str, tuple[float, NotificationPayload]] = {}
        self.scheduled: list[tuple[str, float, NotificationPayload]] = []
        self.cancelled: list[str] = []

    async def schedule(
        self, notification_id: str, fire_in_seconds: float, payload: NotificationPayload
    ) -> None:
        self.pending[notification_id] = (fire_in_seconds, payload)
        self.scheduled.append((notification_id, fire_in_seconds, payload))

    async def cancel(self, ids: Iterable[str]) -> None:
        for notification_id in ids:
            if self.pending.pop(notification_id, None) is not None:
                self.cancelled.append(notification_id)

    async def list_pending(self) -> list[str]:
        return sorted(self.pending)

    def fire(self, notification_id: str) -> None:
        self.pending.pop(notification_id, None)


def iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def item_record(
    name: str,
    category: str = "Treatment",
    *,
    order: int = 0,
    dose: float | None = None,
    unit: str | None = None,
    weekly_doses: Any = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {"name": name, "category": category, "order": order}
    if dose is not None:
        record["dose"] = dose
    if unit is not None:
        record["unit"] = unit
    if weekly_doses is not None:
        record["weeklyDoses"] = weekly_doses
    return record


def room_tree(
    *,
    user_id: str = USER_ID,
    cycle_id: str = CYCLE_ID,
    is_admin: bool = True,
    items: dict[str, dict[str, Any]] | None = None,
    groups: dict[str, dict[str, Any]] | None = None,
    logs: dict[str, list[dict[str, Any]]] | None = None,
    last_reset: datetime | None = NOW,
) -> dict[str, Any]:
    """Remote JSON for one room with a single cycle containing *items*."""
    if items is None:
        items = {
            "ITEM-T1": item_record("Peanut", order=0),
            "ITEM-T2": item_record("Cashew", order=1),
            "ITEM-M1": item_record("Antihistamine", "Medicine", dose=5, unit="mL"),
        }
    cycle: dict[str, Any] = {
        "number": 1,
        "patientName": "Sam",
        "startDate": iso(NOW - timedelta(days=9)),
        "foodChallengeDate": iso(NOW + timedelta(weeks=11)),
        "items": items,
    }
    if groups:
        cycle["groupedItems"] = groups
    tree: dict[str, Any] = {
        "users": {user_id: {"name": "Alex", "isAdmin": is_admin}},
        "cycles": {cycle_id: cycle},
        "units": {"UNIT-1": {"name": "mL"}},
    }
    if logs:
        tree["consumptionLog"] = {cycle_id: logs}
    if last_reset is not None:
        tree["lastResetDate"] = iso(last_reset)
    return tree


def user_record(
    *,
    name: str = "Alex",
    rooms: Iterable[str] = (ROOM_ID,),
    active: str | None = ROOM_ID,
    room_limit: int = 0,
    owned: Iterable[str] = (),
    timer_enabled: bool = True,
) -> dict[str, Any]:
    return {
        "name": name,
        "isAdmin": False,
        "treatmentFoodTimerEnabled": timer_enabled,
        "roomLimit": room_limit,
        "ownedRooms": list(owned),
        "roomAccess": {
            rid: {"joinedAt": iso(NOW - timedelta(days=30)), "isActive": rid == active}
            for rid in rooms
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def port() -> RecordingNotificationPort:
    return RecordingNotificationPort()


@pytest.fixture
def remote() -> MemoryRemoteStore:
    return MemoryRemoteStore()


@pytest.fixture
def config(tmp_path: Path) -> SyncConfig:
    return SyncConfig(
        remote=RemoteConfig(timeout_seconds=1.0, max_attempts=1, retry_backoff_seconds=0.01),
        cache=CacheConfig(dir=str(tmp_path / "cache"), timer_debounce_seconds=0.5),
        storage=StorageConfig(blob_dir=str(tmp_path / "blobs")),
    )


@pytest.fixture
def cache(tmp_path: Path) -> LocalCache:
    return LocalCache.from_directory(tmp_path / "cache")


@pytest.fixture
def make_context(config, remote, port, clock, tmp_path: Path):
    """Factory building a fully wired :class:`SyncContext`."""

    def _make(**overrides: Any) -> SyncContext:
        return SyncContext.create(
            overrides.pop("config", config),
            remote=overrides.pop("remote", remote),
            notifications=overrides.pop("notifications", port),
            blobs=overrides.pop("blobs", LocalBlobStore(tmp_path / "blobs")),
            clock=overrides.pop("clock", clock),
            **overrides,
        )

    return _make
