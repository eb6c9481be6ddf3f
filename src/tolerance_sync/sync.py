"""Listener lifetimes and the optimistic write path for the active room.

:class:`RemoteSync` owns every persistent listener of the attached room and
routes their full-subtree snapshots into the :class:`EntityStore`.  Caller
intents (log an item, toggle a group, add a cycle...) are turned into store
changes, applied optimistically, and persisted with one multi-path remote
``update``.  A failed write rolls the optimistic mutation back and is
reported through :class:`WriteResult` instead of raising.

Listener scopes are strictly paired: ``attach`` while a room is attached and
``detach`` of a room that is not attached both raise
:class:`~tolerance_sync.errors.ListenerPairingError`.  Snapshots delivered
by a closed scope are dropped.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, TypeVar

from tolerance_sync.config import PolicyConfig, RemoteConfig
from tolerance_sync.core.clock import Clock
from tolerance_sync.core.metrics import SyncMetrics
from tolerance_sync.core.telemetry import get_tracer, tag_room_span
from tolerance_sync.errors import (
    ListenerPairingError,
    PermissionDeniedError,
    RemoteError,
    RemoteTimeoutError,
    RemoteWriteError,
)
from tolerance_sync.models import (
    Category,
    Cycle,
    GroupedItem,
    Item,
    LogEntry,
    Reaction,
    TreatmentTimer,
    Unit,
    User,
    decode_timer,
    new_id,
)
from tolerance_sync.remote.base import RemoteStore, Subscription, join_path
from tolerance_sync.store import (
    CYCLE_KINDS,
    ROOM_KINDS,
    VALUE_KEY,
    Change,
    EntityStore,
    Resource,
    ResourceKind,
    encode_value,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMER_PATH = "treatmentTimer"

# Mutation tags passed through to store observers.
TAG_LOG = "log"
TAG_UNLOG = "unlog"
TAG_GROUP_TOGGLE = "group_toggle"
TAG_DAILY_RESET = "daily_reset"
TAG_EDIT = "edit"

WRITE_FAILED_MESSAGE = "Could not save your change. Check your connection and try again."

TimerSnapshotObserver = Callable[[str, TreatmentTimer | None], None]


@dataclass(frozen=True)
class WriteResult:
    """Outcome of an intent that reached the write path."""

    ok: bool
    mutation_id: str | None = None
    error: RemoteError | None = None

    @property
    def changed(self) -> bool:
        return self.mutation_id is not None

    @property
    def message(self) -> str | None:
        return None if self.ok else WRITE_FAILED_MESSAGE


NO_CHANGE = WriteResult(ok=True)


@dataclass
class _Scope:
    """Listeners opened by one ``attach`` call."""

    room_id: str
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    cycle_ids: set[str] = field(default_factory=set)
    closed: bool = False

    def close(self) -> None:
        self.closed = True
        for subscription in self.subscriptions.values():
            subscription.close()
        self.subscriptions.clear()


def _remote_values(changes: list[Change]) -> dict[str, Any]:
    """Flatten store changes into relative paths for one ``update`` call.

    Cycle records are written field by field so their nested items, groups
    and reactions are never overwritten by a cycle edit.
    """
    values: dict[str, Any] = {}
    for change in changes:
        path = change.resource.key_path(change.key)
        if change.resource.kind is ResourceKind.CYCLES and change.value is not None:
            for name, value in change.value.model_dump(mode="json", by_alias=True).items():
                values[join_path(path, name)] = value
        else:
            values[path] = encode_value(change.resource, change.value)
    return values


class RemoteSync:
    """Bridges the remote tree and the entity store for one attached room."""

    def __init__(
        self,
        remote: RemoteStore,
        store: EntityStore,
        clock: Clock,
        *,
        config: RemoteConfig | None = None,
        policy: PolicyConfig | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._remote = remote
        self._store = store
        self._clock = clock
        self._config = config or RemoteConfig()
        self._policy = policy or PolicyConfig()
        self._metrics = metrics or SyncMetrics()
        self._scope: _Scope | None = None
        self._timer_observers: list[TimerSnapshotObserver] = []
        # Acting user for log entries and admin checks.
        self.user: User | None = None

    @property
    def attached_room(self) -> str | None:
        return self._scope.room_id if self._scope is not None else None

    @staticmethod
    def room_path(room_id: str, *parts: str) -> str:
        return join_path("rooms", room_id, *parts)

    def add_timer_observer(self, observer: TimerSnapshotObserver) -> None:
        self._timer_observers.append(observer)

    # ------------------------------------------------------------------
    # Listener lifetimes
    # ------------------------------------------------------------------

    def attach(self, room_id: str) -> None:
        """Open every listener for *room_id*."""
        if self._scope is not None:
            raise ListenerPairingError(
                f"Cannot attach room {room_id!r} while room {self._scope.room_id!r} is attached"
            )
        scope = _Scope(room_id)
        self._scope = scope
        with get_tracer().start_as_current_span("sync.attach") as span:
            tag_room_span(span, room_id)
            for kind in ROOM_KINDS:
                self._listen(scope, Resource(kind))
            scope.subscriptions[TIMER_PATH] = self._remote.listen(
                self.room_path(room_id, TIMER_PATH),
                functools.partial(self._on_timer_snapshot, scope),
            )
            self._sync_cycle_listeners(scope)
            span.set_attribute("tolerance.listeners", len(scope.subscriptions))
        logger.info("Attached %d listeners for room %s", len(scope.subscriptions), room_id)

    def detach(self, room_id: str) -> None:
        """Close every listener opened by the matching :meth:`attach`."""
        scope = self._scope
        if scope is None or scope.room_id != room_id:
            attached = scope.room_id if scope is not None else None
            raise ListenerPairingError(
                f"Cannot detach room {room_id!r}: attached room is {attached!r}"
            )
        count = len(scope.subscriptions)
        scope.close()
        self._scope = None
        logger.info("Detached %d listeners for room %s", count, room_id)

    def _listen(self, scope: _Scope, resource: Resource) -> None:
        path = resource.path()
        scope.subscriptions[path] = self._remote.listen(
            self.room_path(scope.room_id, path),
            functools.partial(self._on_snapshot, scope, resource),
        )

    def _is_live(self, scope: _Scope) -> bool:
        return not scope.closed and scope is self._scope

    def _on_snapshot(self, scope: _Scope, resource: Resource, payload: Any) -> None:
        if not self._is_live(scope):
            logger.debug(
                "Dropping snapshot for %s from closed room %s", resource.path(), scope.room_id
            )
            return
        self._store.apply_remote(resource, payload)
        if resource.kind is ResourceKind.CYCLES:
            self._sync_cycle_listeners(scope)

    def _on_timer_snapshot(self, scope: _Scope, payload: Any) -> None:
        if not self._is_live(scope):
            return
        self._dispatch_timer(scope.room_id, decode_timer(payload))

    def _dispatch_timer(self, room_id: str, timer: TreatmentTimer | None) -> None:
        for observer in list(self._timer_observers):
            try:
                observer(room_id, timer)
            except Exception:
                logger.exception("Timer snapshot observer failed for room %s", room_id)

    def _sync_cycle_listeners(self, scope: _Scope) -> None:
        wanted = {cycle.id for cycle in self._store.cycles()}
        for cycle_id in sorted(wanted - scope.cycle_ids):
            scope.cycle_ids.add(cycle_id)
            for kind in CYCLE_KINDS:
                self._listen(scope, Resource(kind, cycle_id))
        for cycle_id in sorted(scope.cycle_ids - wanted):
            scope.cycle_ids.discard(cycle_id)
            for kind in CYCLE_KINDS:
                subscription = scope.subscriptions.pop(Resource(kind, cycle_id).path(), None)
                if subscription is not None:
                    subscription.close()
            self._store.drop_cycle(cycle_id)
            logger.debug("Closed listeners for removed cycle %s", cycle_id)

    async def pull(self) -> bool:
        """Read the whole attached room once and merge it.

        Returns ``False`` when no room is attached or the room changed while
        the read was in flight.
        """
        scope = self._scope
        if scope is None:
            return False
        path = self.room_path(scope.room_id)
        data = await self._call("get", path, lambda: self._remote.get(path))
        if not self._is_live(scope):
            return False
        data = data if isinstance(data, dict) else {}

        for kind in ROOM_KINDS:
            self._store.apply_remote(Resource(kind), data.get(kind.value))
        self._sync_cycle_listeners(scope)

        cycles = data.get(ResourceKind.CYCLES.value)
        logs = data.get(ResourceKind.CONSUMPTION_LOG.value)
        for cycle_id in sorted(scope.cycle_ids):
            node = cycles.get(cycle_id) if isinstance(cycles, dict) else None
            node = node if isinstance(node, dict) else {}
            for kind in (ResourceKind.ITEMS, ResourceKind.GROUPED_ITEMS, ResourceKind.REACTIONS):
                self._store.apply_remote(Resource(kind, cycle_id), node.get(kind.value))
            self._store.apply_remote(
                Resource(ResourceKind.CONSUMPTION_LOG, cycle_id),
                logs.get(cycle_id) if isinstance(logs, dict) else None,
            )
        self._dispatch_timer(scope.room_id, decode_timer(data.get(TIMER_PATH)))
        return True

    # ------------------------------------------------------------------
    # Remote calls
    # ------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        path: str,
        factory: Callable[[], Awaitable[T]],
        *,
        error_cls: type[RemoteError] = RemoteError,
    ) -> T:
        """Run one remote call with a timeout and bounded exponential retry."""
        attempts = self._config.max_attempts
        delay = self._config.retry_backoff_seconds
        last_error: RemoteError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(factory(), timeout=self._config.timeout_seconds)
            except TimeoutError:
                last_error = RemoteTimeoutError(
                    operation, path, f"no response within {self._config.timeout_seconds:g}s"
                )
            except Exception as exc:
                last_error = error_cls(operation, path, str(exc) or type(exc).__name__)
            if attempt < attempts:
                logger.warning(
                    "Remote %s at %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    operation,
                    path,
                    attempt,
                    attempts,
                    last_error.message,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        assert last_error is not None
        raise last_error

    async def write(self, changes: list[Change], *, tag: str | None = None) -> WriteResult | None:
        """Apply *changes* optimistically and persist them in one update.

        Returns ``None`` when no room is attached.
        """
        room_id = self.attached_room
        if room_id is None:
            logger.debug("Ignoring write of %d changes: no room attached", len(changes))
            return None
        if not changes:
            return NO_CHANGE

        mutation_id = self._store.apply_local(changes, tag=tag)
        values = _remote_values(changes)
        path = self.room_path(room_id)
        with get_tracer().start_as_current_span("sync.write") as span:
            tag_room_span(span, room_id)
            span.set_attribute("tolerance.write.paths", len(values))
            if tag:
                span.set_attribute("tolerance.write.tag", tag)
            try:
                await self._call(
                    "update",
                    path,
                    lambda: self._remote.update(path, values),
                    error_cls=RemoteWriteError,
                )
            except RemoteError as exc:
                span.record_exception(exc)
                self._metrics.remote_write(ok=False)
                self._store.rollback(mutation_id)
                logger.warning(
                    "Write to room %s failed; rolled back mutation %s: %s",
                    room_id,
                    mutation_id,
                    exc,
                )
                return WriteResult(ok=False, mutation_id=mutation_id, error=exc)

        self._store.confirm(mutation_id)
        self._metrics.remote_write(ok=True)
        return WriteResult(ok=True, mutation_id=mutation_id)

    async def write_timer(self, room_id: str, timer: TreatmentTimer | None) -> None:
        """Persist (or clear) the shared timer of any room."""
        path = self.room_path(room_id, TIMER_PATH)
        value = timer.to_remote() if timer is not None else None
        await self._call(
            "set", path, lambda: self._remote.set(path, value), error_cls=RemoteWriteError
        )

    async def read(self, path: str) -> Any:
        """One-shot read of any path, with timeout and retry."""
        return await self._call("get", path, lambda: self._remote.get(path))

    async def set_value(self, path: str, value: Any) -> None:
        await self._call(
            "set", path, lambda: self._remote.set(path, value), error_cls=RemoteWriteError
        )

    async def update_values(self, path: str, values: dict[str, Any]) -> None:
        """Multi-path write outside the attached room (users, invitations...)."""
        await self._call(
            "update", path, lambda: self._remote.update(path, values), error_cls=RemoteWriteError
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _one_per_day(self, entries: list[LogEntry]) -> list[LogEntry]:
        """Earliest entry of each calendar day, in time order."""
        by_day: dict[date, LogEntry] = {}
        for entry in sorted(entries, key=lambda e: e.timestamp):
            by_day.setdefault(self._clock.day_of(entry.timestamp), entry)
        return list(by_day.values())

    def _actor(self) -> User | None:
        if self.attached_room is None or self.user is None:
            return None
        return self.user

    def _require_admin(self, action: str) -> User | None:
        """Acting user, raising unless they administer the attached room."""
        user = self._actor()
        if user is None:
            return None
        member = self._store.member(user.id)
        if not (member.is_admin if member is not None else user.is_admin):
            raise PermissionDeniedError(f"Only room admins can {action}.")
        return user

    def _resolve_cycle(self, cycle_id: str | None) -> str | None:
        if cycle_id is not None:
            return cycle_id if self._store.cycle(cycle_id) is not None else None
        cycle = self._store.current_cycle(self._clock)
        return cycle.id if cycle is not None else None

    def _log_change(self, cycle_id: str, item_id: str, entries: list[LogEntry]) -> Change:
        ordered = sorted(entries, key=lambda e: e.timestamp)
        return Change(Resource(ResourceKind.CONSUMPTION_LOG, cycle_id), item_id, ordered or None)

    def _collapse_changes(
        self, cycle_id: str, updates: dict[str, list[LogEntry]]
    ) -> list[Change]:
        """Keep each touched category's collapse flag equal to "complete today"."""
        today = self._clock.today()
        categories = {
            item.category
            for item_id in updates
            if (item := self._store.item(cycle_id, item_id)) is not None
        }
        changes: list[Change] = []
        for category in sorted(categories):
            items = self._store.items_in_category(cycle_id, category)
            complete = bool(items) and all(
                any(
                    self._clock.day_of(entry.timestamp) == today
                    for entry in updates.get(item.id, self._store.log_entries(cycle_id, item.id))
                )
                for item in items
            )
            if complete != self._store.category_collapsed(category):
                changes.append(
                    Change(Resource(ResourceKind.CATEGORY_COLLAPSED), category.value, complete)
                )
        return changes

    async def _write_logs(
        self, cycle_id: str, updates: dict[str, list[LogEntry]], *, tag: str
    ) -> WriteResult | None:
        if not updates:
            return NO_CHANGE
        changes = [self._log_change(cycle_id, item_id, e) for item_id, e in updates.items()]
        changes.extend(self._collapse_changes(cycle_id, updates))
        return await self.write(changes, tag=tag)

    # ------------------------------------------------------------------
    # Consumption logging
    # ------------------------------------------------------------------

    async def log_item(self, item_id: str, *, cycle_id: str | None = None) -> WriteResult | None:
        """Log *item_id* for today; a second call on the same day is a no-op."""
        user = self._actor()
        cycle_id = self._resolve_cycle(cycle_id) if user is not None else None
        if user is None or cycle_id is None or self._store.item(cycle_id, item_id) is None:
            return None
        now = self._clock.now()
        if self._store.entry_on(cycle_id, item_id, self._clock.day_of(now), self._clock):
            return NO_CHANGE
        entries = [
            *self._one_per_day(self._store.log_entries(cycle_id, item_id)),
            LogEntry.at(now, user.id),
        ]
        return await self._write_logs(cycle_id, {item_id: entries}, tag=TAG_LOG)

    async def unlog_item(self, item_id: str, *, cycle_id: str | None = None) -> WriteResult | None:
        """Remove today's entry for *item_id*."""
        user = self._actor()
        cycle_id = self._resolve_cycle(cycle_id) if user is not None else None
        if user is None or cycle_id is None:
            return None
        today = self._clock.today()
        entries = self._store.log_entries(cycle_id, item_id)
        kept = [e for e in entries if self._clock.day_of(e.timestamp) != today]
        if len(kept) == len(entries):
            return NO_CHANGE
        return await self._write_logs(cycle_id, {item_id: kept}, tag=TAG_UNLOG)

    async def log_consumption(
        self, item_id: str, when: datetime, *, cycle_id: str | None = None
    ) -> WriteResult | None:
        """Record consumption at *when*, replacing any entry on that day."""
        user = self._actor()
        cycle_id = self._resolve_cycle(cycle_id) if user is not None else None
        if user is None or cycle_id is None or self._store.item(cycle_id, item_id) is None:
            return None
        day = self._clock.day_of(when)
        kept = [
            e
            for e in self._store.log_entries(cycle_id, item_id)
            if self._clock.day_of(e.timestamp) != day
        ]
        entries = [*self._one_per_day(kept), LogEntry.at(when, user.id)]
        return await self._write_logs(cycle_id, {item_id: entries}, tag=TAG_LOG)

    async def remove_consumption(
        self, item_id: str, when: datetime, *, cycle_id: str | None = None
    ) -> WriteResult | None:
        """Remove entries whose timestamp equals *when* to the second."""
        user = self._actor()
        cycle_id = self._resolve_cycle(cycle_id) if user is not None else None
        if user is None or cycle_id is None:
            return None
        target = LogEntry.at(when, user.id).timestamp
        entries = self._store.log_entries(cycle_id, item_id)
        kept = [e for e in entries if e.timestamp != target]
        if len(kept) == len(entries):
            return NO_CHANGE
        return await self._write_logs(cycle_id, {item_id: kept}, tag=TAG_UNLOG)

    async def toggle_group(
        self, group_id: str, *, cycle_id: str | None = None
    ) -> WriteResult | None:
        """Uncheck a fully checked group for today, otherwise check every member."""
        user = self._actor()
        cycle_id = self._resolve_cycle(cycle_id) if user is not None else None
        group = self._store.grouped_item(cycle_id, group_id) if cycle_id else None
        if user is None or cycle_id is None or group is None:
            return None
        members = [i for i in group.item_ids if self._store.item(cycle_id, i) is not None]
        if not members:
            return NO_CHANGE

        now = self._clock.now()
        today = self._clock.day_of(now)
        logged = {i: self._store.is_logged_today(cycle_id, i, self._clock) for i in members}
        updates: dict[str, list[LogEntry]] = {}
        if all(logged.values()):
            for item_id in members:
                updates[item_id] = [
                    e
                    for e in self._store.log_entries(cycle_id, item_id)
                    if self._clock.day_of(e.timestamp) != today
                ]
        else:
            for item_id in members:
                if not logged[item_id]:
                    entries = self._store.log_entries(cycle_id, item_id)
                    updates[item_id] = [*entries, LogEntry.at(now, user.id)]
        return await self._write_logs(cycle_id, updates, tag=TAG_GROUP_TOGGLE)

    # ------------------------------------------------------------------
    # Collapse flags and daily reset
    # ------------------------------------------------------------------

    async def set_category_collapsed(
        self, category: Category, collapsed: bool
    ) -> WriteResult | None:
        change = Change(Resource(ResourceKind.CATEGORY_COLLAPSED), category.value, collapsed)
        return await self.write([change], tag=TAG_EDIT)

    async def set_group_collapsed(self, group_id: str, collapsed: bool) -> WriteResult | None:
        change = Change(Resource(ResourceKind.GROUP_COLLAPSED), group_id, collapsed)
        return await self.write([change], tag=TAG_EDIT)

    async def reset_daily(self) -> WriteResult | None:
        """Clear today's entries, expand every category and stamp the reset day.

        Treatment timers are not touched.
        """
        if self.attached_room is None:
            return None
        today = self._clock.today()
        changes: list[Change] = []
        for cycle_id in self._store.logged_cycle_ids():
            for item_id, entries in self._store.consumption_log(cycle_id).items():
                kept = [e for e in entries if self._clock.day_of(e.timestamp) != today]
                if len(kept) != len(entries):
                    changes.append(self._log_change(cycle_id, item_id, kept))
        for category in Category:
            changes.append(Change(Resource(ResourceKind.CATEGORY_COLLAPSED), category.value, False))
        changes.append(
            Change(Resource(ResourceKind.LAST_RESET_DATE), VALUE_KEY, self._clock.start_of_day())
        )
        logger.info("Daily reset for room %s (%d changes)", self.attached_room, len(changes))
        return await self.write(changes, tag=TAG_DAILY_RESET)

    async def check_and_reset_if_needed(self) -> WriteResult | None:
        """Run :meth:`reset_daily` once per calendar day."""
        if self.attached_room is None or not self._store.cycles():
            return None
        last = self._store.last_reset_date()
        if last is not None and self._clock.is_today(last):
            return None
        return await self.reset_daily()

    # ------------------------------------------------------------------
    # Cycles, items, groups
    # ------------------------------------------------------------------

    async def add_cycle(
        self, cycle: Cycle, *, copy_items_from: str | None = None
    ) -> WriteResult | None:
        """Add *cycle*, copying items and groups from a previous cycle.

        Without *copy_items_from* the latest existing cycle is the source.
        Copies get fresh ids; group members are remapped to the copied items.
        An existing cycle id only updates the cycle record.
        """
        if self._require_admin("add cycles") is None:
            return None
        cycles = Resource(ResourceKind.CYCLES)
        if self._store.cycle(cycle.id) is not None:
            return await self.write([Change(cycles, cycle.id, cycle)], tag=TAG_EDIT)

        source = copy_items_from
        if source is None:
            existing = self._store.cycles()
            source = existing[-1].id if existing else None

        changes = [Change(cycles, cycle.id, cycle)]
        if source is not None:
            id_map: dict[str, str] = {}
            for item in self._store.items(source):
                copied = item.model_copy(update={"id": new_id()})
                id_map[item.id] = copied.id
                changes.append(Change(Resource(ResourceKind.ITEMS, cycle.id), copied.id, copied))
            for group in self._store.grouped_items(source):
                copied_group = group.model_copy(
                    update={
                        "id": new_id(),
                        "item_ids": [id_map[i] for i in group.item_ids if i in id_map],
                    }
                )
                changes.append(
                    Change(
                        Resource(ResourceKind.GROUPED_ITEMS, cycle.id),
                        copied_group.id,
                        copied_group,
                    )
                )
            logger.info(
                "Adding cycle %s with %d items copied from %s", cycle.id, len(id_map), source
            )
        result = await self.write(changes, tag=TAG_EDIT)
        if result is not None and result.ok and self._scope is not None:
            self._sync_cycle_listeners(self._scope)
        return result

    async def remove_cycle(self, cycle_id: str) -> WriteResult | None:
        """Remove a cycle; its consumption log is kept unless cascade is enabled."""
        if self._require_admin("remove cycles") is None:
            return None
        if self._store.cycle(cycle_id) is None:
            return NO_CHANGE
        changes = [Change(Resource(ResourceKind.CYCLES), cycle_id, None)]
        if self._policy.cascade_delete:
            for item_id in self._store.consumption_log(cycle_id):
                changes.append(self._log_change(cycle_id, item_id, []))
        result = await self.write(changes, tag=TAG_EDIT)
        if result is not None and result.ok and self._scope is not None:
            self._sync_cycle_listeners(self._scope)
        return result

    async def set_profile_image_url(self, cycle_id: str, url: str | None) -> WriteResult | None:
        cycle = self._store.cycle(cycle_id)
        if cycle is None:
            return None
        updated = cycle.model_copy(update={"profile_image_url": url})
        return await self.write(
            [Change(Resource(ResourceKind.CYCLES), cycle_id, updated)], tag=TAG_EDIT
        )

    def _missing_unit_changes(self, items: list[Item]) -> list[Change]:
        known = {unit.name.lower() for unit in self._store.units()}
        changes: list[Change] = []
        for item in items:
            names = [item.unit] if item.unit else []
            names.extend(dose.unit for dose in (item.weekly_doses or {}).values() if dose.unit)
            for name in names:
                if name.lower() in known:
                    continue
                known.add(name.lower())
                unit = Unit(id=new_id(), name=name)
                changes.append(Change(Resource(ResourceKind.UNITS), unit.id, unit))
        return changes

    async def ensure_item_units(self) -> WriteResult | None:
        """Add every unit name used by an item but missing from the unit table."""
        if self._actor() is None:
            return None
        items = [item for cycle in self._store.cycles() for item in self._store.items(cycle.id)]
        changes = self._missing_unit_changes(items)
        if not changes:
            return NO_CHANGE
        return await self.write(changes, tag=TAG_EDIT)

    async def add_item(self, item: Item, cycle_id: str) -> WriteResult | None:
        if self._require_admin("edit items") is None or self._store.cycle(cycle_id) is None:
            return None
        if item.order == 0 and self._store.item(cycle_id, item.id) is None:
            item = item.model_copy(update={"order": len(self._store.items(cycle_id))})
        changes = [Change(Resource(ResourceKind.ITEMS, cycle_id), item.id, item)]
        changes.extend(self._missing_unit_changes([item]))
        return await self.write(changes, tag=TAG_EDIT)

    async def remove_item(self, item_id: str, cycle_id: str) -> WriteResult | None:
        """Remove an item and drop it from every group that lists it."""
        if self._require_admin("edit items") is None:
            return None
        if self._store.item(cycle_id, item_id) is None:
            return NO_CHANGE
        changes = [Change(Resource(ResourceKind.ITEMS, cycle_id), item_id, None)]
        for group in self._store.grouped_items(cycle_id):
            if item_id in group.item_ids:
                trimmed = group.model_copy(
                    update={"item_ids": [i for i in group.item_ids if i != item_id]}
                )
                changes.append(
                    Change(Resource(ResourceKind.GROUPED_ITEMS, cycle_id), group.id, trimmed)
                )
        if self._policy.cascade_delete and self._store.log_entries(cycle_id, item_id):
            changes.append(self._log_change(cycle_id, item_id, []))
        return await self.write(changes, tag=TAG_EDIT)

    async def add_grouped_item(self, group: GroupedItem, cycle_id: str) -> WriteResult | None:
        if self._require_admin("edit groups") is None or self._store.cycle(cycle_id) is None:
            return None
        change = Change(Resource(ResourceKind.GROUPED_ITEMS, cycle_id), group.id, group)
        return await self.write([change], tag=TAG_EDIT)

    async def remove_grouped_item(self, group_id: str, cycle_id: str) -> WriteResult | None:
        if self._require_admin("edit groups") is None:
            return None
        if self._store.grouped_item(cycle_id, group_id) is None:
            return NO_CHANGE
        changes = [Change(Resource(ResourceKind.GROUPED_ITEMS, cycle_id), group_id, None)]
        if self._store.get(Resource(ResourceKind.GROUP_COLLAPSED), group_id) is not None:
            changes.append(Change(Resource(ResourceKind.GROUP_COLLAPSED), group_id, None))
        return await self.write(changes, tag=TAG_EDIT)

    # ------------------------------------------------------------------
    # Reactions and members
    # ------------------------------------------------------------------

    async def add_reaction(
        self, reaction: Reaction, *, cycle_id: str | None = None
    ) -> WriteResult | None:
        user = self._actor()
        cycle_id = self._resolve_cycle(cycle_id) if user is not None else None
        if user is None or cycle_id is None:
            return None
        change = Change(Resource(ResourceKind.REACTIONS, cycle_id), reaction.id, reaction)
        return await self.write([change], tag=TAG_EDIT)

    async def remove_reaction(self, reaction_id: str, cycle_id: str) -> WriteResult | None:
        if self._actor() is None:
            return None
        change = Change(Resource(ResourceKind.REACTIONS, cycle_id), reaction_id, None)
        return await self.write([change], tag=TAG_EDIT)

    async def save_member(self, user: User) -> WriteResult | None:
        """Write *user* into the attached room's member table."""
        return await self.write(
            [Change(Resource(ResourceKind.USERS), user.id, user)], tag=TAG_EDIT
        )
