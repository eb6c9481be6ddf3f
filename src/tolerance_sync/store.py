"""In-memory canonical entity graph for the active room.

Every component reads room data from :class:`EntityStore` and every change
goes through it:

- :meth:`EntityStore.apply_local` applies an optimistic mutation immediately
  and returns a mutation id; :meth:`EntityStore.confirm` and
  :meth:`EntityStore.rollback` settle it once the remote write resolves.
- :meth:`EntityStore.apply_remote` merges a full-subtree listener snapshot.
  Merging is idempotent: replaying the same snapshot leaves the state
  unchanged and emits no change notification.

State is organised in *resources* (one per listened remote subtree), each a
mapping of key -> typed value.  Treatment timers are deliberately not stored
here; they outlive a room selection and belong to the timer engine.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, NamedTuple

from tolerance_sync.core.clock import Clock
from tolerance_sync.core.metrics import SyncMetrics
from tolerance_sync.models import (
    Category,
    Cycle,
    GroupedItem,
    Item,
    LogEntry,
    Reaction,
    Unit,
    User,
    decode_collection,
    decode_consumption_log,
    decode_flags,
    encode_log_entries,
    parse_timestamp,
)
from tolerance_sync.remote.base import join_path, split_path

logger = logging.getLogger(__name__)


class ResourceKind(enum.StrEnum):
    CYCLES = "cycles"
    UNITS = "units"
    USERS = "users"
    CATEGORY_COLLAPSED = "categoryCollapsed"
    GROUP_COLLAPSED = "groupCollapsed"
    LAST_RESET_DATE = "lastResetDate"
    ITEMS = "items"
    GROUPED_ITEMS = "groupedItems"
    REACTIONS = "reactions"
    CONSUMPTION_LOG = "consumptionLog"


ROOM_KINDS = (
    ResourceKind.CYCLES,
    ResourceKind.UNITS,
    ResourceKind.USERS,
    ResourceKind.CATEGORY_COLLAPSED,
    ResourceKind.GROUP_COLLAPSED,
    ResourceKind.LAST_RESET_DATE,
)
CYCLE_KINDS = (
    ResourceKind.ITEMS,
    ResourceKind.GROUPED_ITEMS,
    ResourceKind.REACTIONS,
    ResourceKind.CONSUMPTION_LOG,
)

_RECORD_MODELS: dict[ResourceKind, type] = {
    ResourceKind.CYCLES: Cycle,
    ResourceKind.UNITS: Unit,
    ResourceKind.USERS: User,
    ResourceKind.ITEMS: Item,
    ResourceKind.GROUPED_ITEMS: GroupedItem,
    ResourceKind.REACTIONS: Reaction,
}

# Scalar resources keep their single value under this key.
VALUE_KEY = ""


class Resource(NamedTuple):
    """One listened subtree of the active room."""

    kind: ResourceKind
    cycle_id: str | None = None

    def path(self) -> str:
        """Path relative to ``rooms/<roomId>``."""
        if self.kind is ResourceKind.CONSUMPTION_LOG:
            return join_path(self.kind.value, self.cycle_id)
        if self.kind in CYCLE_KINDS:
            return join_path(ResourceKind.CYCLES.value, self.cycle_id, self.kind.value)
        return self.kind.value

    def key_path(self, key: str) -> str:
        return join_path(self.path(), key) if key else self.path()

    @classmethod
    def from_path(cls, path: str) -> Resource:
        parts = split_path(path)
        if len(parts) == 1:
            return cls(ResourceKind(parts[0]))
        if len(parts) == 2 and parts[0] == ResourceKind.CONSUMPTION_LOG:
            return cls(ResourceKind.CONSUMPTION_LOG, parts[1])
        if len(parts) == 3 and parts[0] == ResourceKind.CYCLES:
            return cls(ResourceKind(parts[2]), parts[1])
        raise ValueError(f"Not a room resource path: {path!r}")


class Change(NamedTuple):
    """Set ``resource[key] = value``; ``value=None`` removes the key."""

    resource: Resource
    key: str
    value: Any


class ChangeOrigin(enum.StrEnum):
    LOCAL = "local"
    REMOTE = "remote"
    ROLLBACK = "rollback"
    RESET = "reset"


@dataclass(frozen=True)
class StoreChange:
    resource: Resource
    keys: frozenset[str]
    origin: ChangeOrigin
    mutation_id: str | None = None
    # Values held before a local apply; ``None`` for keys that were unset.
    previous: dict[str, Any] = field(default_factory=dict)
    tag: str | None = None


StoreObserver = Callable[[StoreChange], None]

_MISSING = object()


@dataclass
class _Mutation:
    id: str
    # (resource, key, previous value or _MISSING, applied value)
    entries: list[tuple[Resource, str, Any, Any]] = field(default_factory=list)


def encode_value(resource: Resource, value: Any) -> Any:
    """Encode a store value into its remote JSON shape."""
    if value is None:
        return None
    if resource.kind is ResourceKind.CONSUMPTION_LOG:
        return encode_log_entries(list(value))
    if resource.kind is ResourceKind.LAST_RESET_DATE:
        return value.isoformat().replace("+00:00", "Z")
    if hasattr(value, "to_remote"):
        return value.to_remote()
    return value


class EntityStore:
    """Canonical in-memory graph with optimistic mutations and idempotent merges."""

    def __init__(self, *, metrics: SyncMetrics | None = None) -> None:
        self._data: dict[Resource, dict[str, Any]] = {}
        self._mutations: dict[str, _Mutation] = {}
        self._pending: dict[tuple[Resource, str], set[str]] = {}
        self._observers: list[StoreObserver] = []
        self._metrics = metrics or SyncMetrics()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: StoreObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _emit(self, change: StoreChange) -> None:
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception("Store observer failed for %s", change.resource.path())

    # ------------------------------------------------------------------
    # Optimistic local mutations
    # ------------------------------------------------------------------

    def apply_local(self, changes: Iterable[Change], *, tag: str | None = None) -> str:
        """Apply *changes* synchronously and return the mutation id.

        *tag* names the intent behind the mutation and is passed through to
        observers unchanged.
        """
        mutation = _Mutation(id=str(uuid.uuid4()))
        touched: dict[Resource, dict[str, Any]] = {}
        for change in changes:
            bucket = self._data.setdefault(change.resource, {})
            previous = bucket.get(change.key, _MISSING)
            if change.value is None:
                bucket.pop(change.key, None)
            else:
                bucket[change.key] = change.value
            mutation.entries.append((change.resource, change.key, previous, change.value))
            self._pending.setdefault((change.resource, change.key), set()).add(mutation.id)
            before = touched.setdefault(change.resource, {})
            if change.key not in before and previous is not _MISSING:
                before[change.key] = previous
            before.setdefault(change.key, None)

        self._mutations[mutation.id] = mutation
        for resource, before in touched.items():
            self._emit(
                StoreChange(
                    resource,
                    frozenset(before),
                    ChangeOrigin.LOCAL,
                    mutation.id,
                    previous=before,
                    tag=tag,
                )
            )
        return mutation.id

    def confirm(self, mutation_id: str) -> None:
        """Mark a mutation as persisted remotely."""
        mutation = self._mutations.pop(mutation_id, None)
        if mutation is not None:
            self._clear_pending(mutation)

    def rollback(self, mutation_id: str) -> bool:
        """Revert keys that still hold the optimistic value of *mutation_id*.

        Keys overwritten since (by a newer mutation or a remote snapshot)
        are left alone.  Returns ``False`` for an unknown or settled id.
        """
        mutation = self._mutations.pop(mutation_id, None)
        if mutation is None:
            return False
        self._clear_pending(mutation)

        touched: dict[Resource, set[str]] = {}
        for resource, key, previous, applied in reversed(mutation.entries):
            bucket = self._data.setdefault(resource, {})
            current = bucket.get(key, _MISSING)
            still_ours = current is _MISSING if applied is None else current == applied
            if not still_ours:
                continue
            if previous is _MISSING:
                bucket.pop(key, None)
            else:
                bucket[key] = previous
            touched.setdefault(resource, set()).add(key)

        self._metrics.rollback()
        logger.info("Rolled back mutation %s (%d keys)", mutation_id, len(mutation.entries))
        for resource, keys in touched.items():
            self._emit(StoreChange(resource, frozenset(keys), ChangeOrigin.ROLLBACK, mutation_id))
        return True

    def _clear_pending(self, mutation: _Mutation) -> None:
        for resource, key, _, _ in mutation.entries:
            ids = self._pending.get((resource, key))
            if ids is None:
                continue
            ids.discard(mutation.id)
            if not ids:
                del self._pending[(resource, key)]

    def is_pending(self, resource: Resource, key: str) -> bool:
        return (resource, key) in self._pending

    # ------------------------------------------------------------------
    # Remote merges
    # ------------------------------------------------------------------

    def apply_remote(self, resource: Resource, payload: Any) -> bool:
        """Merge a full-subtree snapshot; returns whether anything changed."""
        current = self._data.get(resource, {})
        if resource.kind in _RECORD_MODELS:
            merged = self._merge_records(resource, current, payload)
        elif resource.kind is ResourceKind.CONSUMPTION_LOG:
            decoded = decode_consumption_log(payload)
            self._metrics.malformed_records(resource.kind, decoded.skipped)
            merged = self._keep_pending(resource, current, dict(decoded.records))
        elif resource.kind in (ResourceKind.CATEGORY_COLLAPSED, ResourceKind.GROUP_COLLAPSED):
            merged = self._keep_pending(resource, current, decode_flags(payload))
        else:
            ts = parse_timestamp(payload)
            merged = self._keep_pending(resource, current, {VALUE_KEY: ts} if ts else {})

        changed = {k for k in current.keys() | merged.keys() if current.get(k) != merged.get(k)}
        self._metrics.snapshot_applied(resource.kind)
        if not changed:
            return False
        self._data[resource] = merged
        self._emit(StoreChange(resource, frozenset(changed), ChangeOrigin.REMOTE))
        return True

    def _merge_records(
        self, resource: Resource, current: dict[str, Any], payload: Any
    ) -> dict[str, Any]:
        decoded = decode_collection(_RECORD_MODELS[resource.kind], payload, resource=resource.kind)
        self._metrics.malformed_records(resource.kind, decoded.skipped)
        if not decoded.records:
            # Empty or wholly malformed reads never delete local records.
            if payload is not None and current:
                logger.debug("Keeping %d local %s over empty snapshot", len(current), resource.kind)
            return dict(current)

        merged: dict[str, Any] = {}
        for record_id, remote in decoded.records.items():
            merged[record_id] = _merge_record(current.get(record_id), remote)
        for record_id, local in current.items():
            if record_id in merged:
                continue
            # Undecodable remote copies leave the local record in place.
            if record_id in decoded.skipped_ids or self.is_pending(resource, record_id):
                merged[record_id] = local
        return merged

    def _keep_pending(
        self, resource: Resource, current: dict[str, Any], incoming: dict[str, Any]
    ) -> dict[str, Any]:
        merged = dict(incoming)
        for (pending_resource, key) in self._pending:
            if pending_resource != resource:
                continue
            if key in current:
                merged[key] = current[key]
            else:
                merged.pop(key, None)
        return merged

    # ------------------------------------------------------------------
    # Room lifecycle
    # ------------------------------------------------------------------

    def clear_room_state(self) -> None:
        """Drop all room data and pending marks; timers are not stored here."""
        cleared = [(resource, frozenset(keys)) for resource, keys in self._data.items() if keys]
        self._data.clear()
        self._pending.clear()
        self._mutations.clear()
        for resource, keys in cleared:
            self._emit(StoreChange(resource, keys, ChangeOrigin.RESET))

    def drop_cycle(self, cycle_id: str) -> None:
        """Forget the cycle-scoped resources of a cycle that no longer exists."""
        for kind in CYCLE_KINDS:
            resource = Resource(kind, cycle_id)
            keys = self._data.pop(resource, None)
            if keys:
                self._emit(StoreChange(resource, frozenset(keys), ChangeOrigin.REMOTE))

    def export_snapshot(self) -> dict[str, Any]:
        """Encode the graph keyed by resource path, in remote JSON shape."""
        snapshot: dict[str, Any] = {}
        for resource, bucket in self._data.items():
            if not bucket:
                continue
            if resource.kind is ResourceKind.LAST_RESET_DATE:
                snapshot[resource.path()] = encode_value(resource, bucket.get(VALUE_KEY))
            else:
                snapshot[resource.path()] = {
                    key: encode_value(resource, value) for key, value in bucket.items()
                }
        return snapshot

    def import_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Seed the graph from :meth:`export_snapshot` output (cold start)."""
        for path, payload in snapshot.items():
            try:
                resource = Resource.from_path(path)
            except ValueError:
                logger.warning("Ignoring cached resource with unknown path %r", path)
                continue
            self.apply_remote(resource, payload)

    # ------------------------------------------------------------------
    # Typed reads
    # ------------------------------------------------------------------

    def get(self, resource: Resource, key: str) -> Any | None:
        return self._data.get(resource, {}).get(key)

    def values(self, resource: Resource) -> list[Any]:
        return list(self._data.get(resource, {}).values())

    def cycles(self) -> list[Cycle]:
        return sorted(self.values(Resource(ResourceKind.CYCLES)), key=lambda c: c.start_date)

    def cycle(self, cycle_id: str) -> Cycle | None:
        return self.get(Resource(ResourceKind.CYCLES), cycle_id)

    def items(self, cycle_id: str) -> list[Item]:
        return sorted(
            self.values(Resource(ResourceKind.ITEMS, cycle_id)), key=lambda i: (i.order, i.name)
        )

    def item(self, cycle_id: str, item_id: str) -> Item | None:
        return self.get(Resource(ResourceKind.ITEMS, cycle_id), item_id)

    def grouped_items(self, cycle_id: str) -> list[GroupedItem]:
        return sorted(
            self.values(Resource(ResourceKind.GROUPED_ITEMS, cycle_id)), key=lambda g: g.name
        )

    def grouped_item(self, cycle_id: str, group_id: str) -> GroupedItem | None:
        return self.get(Resource(ResourceKind.GROUPED_ITEMS, cycle_id), group_id)

    def reactions(self, cycle_id: str) -> list[Reaction]:
        return sorted(
            self.values(Resource(ResourceKind.REACTIONS, cycle_id)), key=lambda r: r.date
        )

    def log_entries(self, cycle_id: str, item_id: str) -> list[LogEntry]:
        return list(self.get(Resource(ResourceKind.CONSUMPTION_LOG, cycle_id), item_id) or [])

    def consumption_log(self, cycle_id: str) -> dict[str, list[LogEntry]]:
        return {
            k: list(v)
            for k, v in self._data.get(Resource(ResourceKind.CONSUMPTION_LOG, cycle_id), {}).items()
        }

    def logged_cycle_ids(self) -> list[str]:
        return [
            resource.cycle_id
            for resource, bucket in self._data.items()
            if resource.kind is ResourceKind.CONSUMPTION_LOG and bucket and resource.cycle_id
        ]

    def units(self) -> list[Unit]:
        return sorted(self.values(Resource(ResourceKind.UNITS)), key=lambda u: u.name.lower())

    def members(self) -> list[User]:
        return self.values(Resource(ResourceKind.USERS))

    def member(self, user_id: str) -> User | None:
        return self.get(Resource(ResourceKind.USERS), user_id)

    def category_collapsed(self, category: Category) -> bool:
        return bool(self.get(Resource(ResourceKind.CATEGORY_COLLAPSED), category.value))

    def group_collapsed(self, group_id: str) -> bool:
        return bool(self.get(Resource(ResourceKind.GROUP_COLLAPSED), group_id))

    def last_reset_date(self) -> datetime | None:
        return self.get(Resource(ResourceKind.LAST_RESET_DATE), VALUE_KEY)

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def current_cycle(self, clock: Clock) -> Cycle | None:
        """Cycle whose window contains today, else latest started, else last."""
        cycles = self.cycles()
        if not cycles:
            return None
        today = clock.today()
        for cycle in cycles:
            if clock.day_of(cycle.start_date) <= today <= clock.day_of(cycle.food_challenge_date):
                return cycle
        started = [c for c in cycles if clock.day_of(c.start_date) <= today]
        if started:
            return max(started, key=lambda c: c.start_date)
        return cycles[-1]

    def entry_on(self, cycle_id: str, item_id: str, day: date, clock: Clock) -> LogEntry | None:
        for entry in self.log_entries(cycle_id, item_id):
            if clock.day_of(entry.timestamp) == day:
                return entry
        return None

    def is_logged_today(self, cycle_id: str, item_id: str, clock: Clock) -> bool:
        return self.entry_on(cycle_id, item_id, clock.today(), clock) is not None

    def items_in_category(self, cycle_id: str, category: Category) -> list[Item]:
        return [item for item in self.items(cycle_id) if item.category is category]

    def unlogged_items(self, cycle_id: str, category: Category, clock: Clock) -> list[Item]:
        return [
            item
            for item in self.items_in_category(cycle_id, category)
            if not self.is_logged_today(cycle_id, item.id, clock)
        ]

    def is_category_complete(self, cycle_id: str, category: Category, clock: Clock) -> bool:
        items = self.items_in_category(cycle_id, category)
        return bool(items) and not self.unlogged_items(cycle_id, category, clock)


def _merge_record(local: Any, remote: Any) -> Any:
    # Week-indexed doses edited locally survive a remote copy that lacks them.
    if isinstance(remote, Item) and isinstance(local, Item):
        if remote.weekly_doses is None and local.weekly_doses:
            return remote.model_copy(update={"weekly_doses": local.weekly_doses})
    return remote
