"""Tests for listener lifetimes and the optimistic write path."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from tolerance_sync.config import PolicyConfig, RemoteConfig
from tolerance_sync.errors import (
    ListenerPairingError,
    PermissionDeniedError,
    RemoteError,
    RemoteTimeoutError,
    RemoteWriteError,
)
from tolerance_sync.models import Category, Cycle, Item, LogEntry, Reaction, Symptom, User
from tolerance_sync.remote.memory import MemoryRemoteStore
from tolerance_sync.store import ChangeOrigin, EntityStore, StoreChange
from tolerance_sync.sync import WRITE_FAILED_MESSAGE, RemoteSync

from conftest import CYCLE_ID, NOW, ROOM_ID, USER_ID, iso, item_record, room_tree

pytestmark = pytest.mark.unit

GROUPS = {
    "GROUP-1": {"name": "Nuts", "category": "Treatment", "itemIds": ["ITEM-T1", "ITEM-T2"]},
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build(
    clock,
    tree: dict[str, Any] | None = None,
    *,
    remote_config: RemoteConfig | None = None,
    policy: PolicyConfig | None = None,
    attach: bool = True,
) -> tuple[MemoryRemoteStore, EntityStore, RemoteSync]:
    remote = MemoryRemoteStore({"rooms": {ROOM_ID: tree if tree is not None else room_tree()}})
    store = EntityStore()
    sync = RemoteSync(
        remote,
        store,
        clock,
        config=remote_config
        or RemoteConfig(timeout_seconds=1.0, max_attempts=1, retry_backoff_seconds=0.01),
        policy=policy,
    )
    sync.user = User(id=USER_ID, name="Alex", is_admin=False)
    if attach:
        sync.attach(ROOM_ID)
    return remote, store, sync


def _room(remote: MemoryRemoteStore, path: str) -> Any:
    return remote.snapshot(f"rooms/{ROOM_ID}/{path}")


def _log(ts) -> dict[str, str]:
    return {"timestamp": iso(ts), "userId": USER_ID}


# ---------------------------------------------------------------------------
# Listener lifetimes
# ---------------------------------------------------------------------------


class TestListeners:
    def test_attach_opens_room_cycle_and_timer_listeners(self, clock):
        remote, store, sync = _build(clock)

        assert sync.attached_room == ROOM_ID
        # Six room resources, the shared timer, four per cycle.
        assert remote.listener_count == 11
        assert f"rooms/{ROOM_ID}/treatmentTimer" in remote.listener_paths()
        assert f"rooms/{ROOM_ID}/cycles/{CYCLE_ID}/items" in remote.listener_paths()
        assert [i.id for i in store.items(CYCLE_ID)] == ["ITEM-M1", "ITEM-T1", "ITEM-T2"]

    def test_detach_closes_every_listener(self, clock):
        remote, _, sync = _build(clock)
        sync.detach(ROOM_ID)
        assert remote.listener_count == 0
        assert sync.attached_room is None

    def test_attach_while_attached_raises(self, clock):
        _, _, sync = _build(clock)
        with pytest.raises(ListenerPairingError, match="while room 'ROOM-A' is attached"):
            sync.attach("ROOM-B")

    def test_detach_of_other_room_raises(self, clock):
        _, _, sync = _build(clock)
        with pytest.raises(ListenerPairingError, match="attached room is 'ROOM-A'"):
            sync.detach("ROOM-B")
        sync.detach(ROOM_ID)
        with pytest.raises(ListenerPairingError, match="attached room is None"):
            sync.detach(ROOM_ID)

    async def test_snapshots_after_detach_do_not_reach_store(self, clock):
        remote, store, sync = _build(clock)
        sync.detach(ROOM_ID)
        await remote.set(f"rooms/{ROOM_ID}/units/UNIT-2", {"name": "g"})
        assert [u.name for u in store.units()] == ["mL"]

    async def test_new_cycle_opens_listeners_and_removed_cycle_closes_them(self, clock):
        remote, store, sync = _build(clock)
        await remote.set(
            f"rooms/{ROOM_ID}/cycles/CYCLE-2",
            {
                "number": 2,
                "patientName": "Sam",
                "startDate": iso(NOW + timedelta(weeks=12)),
                "foodChallengeDate": iso(NOW + timedelta(weeks=24)),
                "items": {"I9": item_record("Egg")},
            },
        )
        assert f"rooms/{ROOM_ID}/cycles/CYCLE-2/items" in remote.listener_paths()
        assert [i.name for i in store.items("CYCLE-2")] == ["Egg"]

        await remote.remove(f"rooms/{ROOM_ID}/cycles/CYCLE-2")
        assert f"rooms/{ROOM_ID}/cycles/CYCLE-2/items" not in remote.listener_paths()
        assert store.items("CYCLE-2") == []

    def test_timer_observer_receives_room_timer(self, clock):
        tree = room_tree()
        tree["treatmentTimer"] = {
            "id": "treatment_timer_1",
            "isActive": True,
            "endTime": iso(NOW + timedelta(minutes=10)),
        }
        remote, _, sync = _build(clock, tree, attach=False)
        seen: list = []
        sync.add_timer_observer(lambda room_id, timer: seen.append((room_id, timer)))

        sync.attach(ROOM_ID)

        assert len(seen) == 1
        room_id, timer = seen[0]
        assert room_id == ROOM_ID
        assert timer.id == "treatment_timer_1"

    async def test_pull_merges_room_and_dispatches_timer(self, clock):
        remote, store, sync = _build(clock)
        seen: list = []
        sync.add_timer_observer(lambda room_id, timer: seen.append(timer))

        assert await sync.pull() is True

        assert seen == [None]
        assert store.cycle(CYCLE_ID) is not None

    async def test_pull_without_room_returns_false(self, clock):
        _, _, sync = _build(clock, attach=False)
        assert await sync.pull() is False

    async def test_pull_offline_raises_remote_error(self, clock):
        remote, _, sync = _build(clock)
        remote.offline = True
        with pytest.raises(RemoteError, match="offline"):
            await sync.pull()


# ---------------------------------------------------------------------------
# Remote calls
# ---------------------------------------------------------------------------


class TestRemoteCalls:
    async def test_retry_recovers_from_transient_failure(self, clock):
        remote, _, sync = _build(
            clock,
            remote_config=RemoteConfig(
                timeout_seconds=1.0, max_attempts=2, retry_backoff_seconds=0.01
            ),
        )
        remote.fail_next()
        assert await sync.read(f"rooms/{ROOM_ID}/units/UNIT-1") == {"name": "mL"}

    async def test_timeout_raises_timeout_error(self, clock):
        remote, _, sync = _build(
            clock,
            remote_config=RemoteConfig(
                timeout_seconds=0.01, max_attempts=1, retry_backoff_seconds=0.01
            ),
        )
        remote.latency = 0.2
        with pytest.raises(RemoteTimeoutError, match="no response within"):
            await sync.read("users")

    async def test_write_without_attached_room_is_ignored(self, clock):
        _, _, sync = _build(clock, attach=False)
        assert await sync.log_item("ITEM-T1") is None
        assert await sync.reset_daily() is None

    async def test_write_timer_sets_and_clears(self, clock):
        remote, _, sync = _build(clock)
        await sync.write_timer("ROOM-B", None)
        assert remote.writes[-1] == ("set", "rooms/ROOM-B/treatmentTimer", None)


# ---------------------------------------------------------------------------
# Consumption logging
# ---------------------------------------------------------------------------


class TestLogging:
    async def test_log_item_writes_entry_once_per_day(self, clock):
        remote, store, sync = _build(clock)

        result = await sync.log_item("ITEM-T1")
        assert result.ok and result.changed
        writes = len(remote.writes)

        again = await sync.log_item("ITEM-T1")
        assert again.ok and not again.changed
        assert len(remote.writes) == writes

        assert store.is_logged_today(CYCLE_ID, "ITEM-T1", clock)
        logged = _room(remote, f"consumptionLog/{CYCLE_ID}/ITEM-T1")
        assert logged == [{"timestamp": iso(NOW), "userId": USER_ID}]

    async def test_log_item_collapses_duplicate_days(self, clock):
        yesterday = NOW - timedelta(days=1)
        earlier = yesterday - timedelta(hours=2)
        tree = room_tree(logs={"ITEM-T1": [_log(yesterday), _log(earlier)]})
        remote, store, sync = _build(clock, tree)

        assert (await sync.log_item("ITEM-T1")).changed
        assert _room(remote, f"consumptionLog/{CYCLE_ID}/ITEM-T1") == [_log(earlier), _log(NOW)]
        assert len(store.log_entries(CYCLE_ID, "ITEM-T1")) == 2

    async def test_log_unknown_item_or_without_user(self, clock):
        _, _, sync = _build(clock)
        assert await sync.log_item("NOPE") is None
        sync.user = None
        assert await sync.log_item("ITEM-T1") is None

    async def test_completing_category_sets_collapse_flag(self, clock):
        remote, store, sync = _build(clock)

        await sync.log_item("ITEM-T1")
        assert not store.category_collapsed(Category.TREATMENT)
        await sync.log_item("ITEM-T2")
        assert store.category_collapsed(Category.TREATMENT)
        assert _room(remote, "categoryCollapsed/Treatment") is True

        await sync.unlog_item("ITEM-T2")
        assert not store.category_collapsed(Category.TREATMENT)
        assert _room(remote, "categoryCollapsed/Treatment") is False

    async def test_unlog_keeps_earlier_days(self, clock):
        yesterday = NOW - timedelta(days=1)
        tree = room_tree(logs={"ITEM-T1": [_log(yesterday), _log(NOW)]})
        remote, store, sync = _build(clock, tree)

        assert (await sync.unlog_item("ITEM-T1")).changed
        assert [e.timestamp for e in store.log_entries(CYCLE_ID, "ITEM-T1")] == [yesterday]
        assert not (await sync.unlog_item("ITEM-T1")).changed

    async def test_failed_write_rolls_back_and_reports(self, clock):
        remote, store, sync = _build(clock)
        origins: list[ChangeOrigin] = []

        def _record(change: StoreChange) -> None:
            origins.append(change.origin)

        store.subscribe(_record)
        remote.fail_next()

        result = await sync.log_item("ITEM-T1")

        assert result.ok is False
        assert result.message == WRITE_FAILED_MESSAGE
        assert isinstance(result.error, RemoteWriteError)
        assert not store.is_logged_today(CYCLE_ID, "ITEM-T1", clock)
        assert origins == [ChangeOrigin.LOCAL, ChangeOrigin.ROLLBACK]
        assert _room(remote, "consumptionLog") is None

    async def test_log_consumption_replaces_same_day_entry(self, clock):
        remote, store, sync = _build(clock)
        await sync.log_consumption("ITEM-T1", NOW - timedelta(hours=2))
        await sync.log_consumption("ITEM-T1", NOW - timedelta(hours=1))
        entries = store.log_entries(CYCLE_ID, "ITEM-T1")
        assert [e.timestamp for e in entries] == [NOW - timedelta(hours=1)]

    async def test_remove_consumption_matches_to_the_second(self, clock):
        earlier = NOW - timedelta(days=2)
        tree = room_tree(logs={"ITEM-T1": [_log(earlier), _log(NOW)]})
        _, store, sync = _build(clock, tree)

        result = await sync.remove_consumption("ITEM-T1", earlier.replace(microsecond=500))

        assert result.changed
        assert store.log_entries(CYCLE_ID, "ITEM-T1") == [LogEntry.at(NOW, USER_ID)]


class TestGroups:
    async def test_toggle_checks_then_unchecks_every_member(self, clock):
        _, store, sync = _build(clock, room_tree(groups=GROUPS))

        await sync.toggle_group("GROUP-1")
        assert store.is_logged_today(CYCLE_ID, "ITEM-T1", clock)
        assert store.is_logged_today(CYCLE_ID, "ITEM-T2", clock)
        assert store.category_collapsed(Category.TREATMENT)

        await sync.toggle_group("GROUP-1")
        assert not store.is_logged_today(CYCLE_ID, "ITEM-T1", clock)
        assert not store.is_logged_today(CYCLE_ID, "ITEM-T2", clock)
        assert not store.category_collapsed(Category.TREATMENT)

    async def test_partial_group_only_logs_missing_members(self, clock):
        _, store, sync = _build(clock, room_tree(groups=GROUPS))
        await sync.log_item("ITEM-T1", cycle_id=CYCLE_ID)

        await sync.toggle_group("GROUP-1")

        assert len(store.log_entries(CYCLE_ID, "ITEM-T1")) == 1
        assert store.is_logged_today(CYCLE_ID, "ITEM-T2", clock)

    async def test_unknown_group_is_ignored(self, clock):
        _, _, sync = _build(clock)
        assert await sync.toggle_group("NOPE") is None

    async def test_group_collapse_flag(self, clock):
        remote, store, sync = _build(clock, room_tree(groups=GROUPS))
        await sync.set_group_collapsed("GROUP-1", True)
        assert store.group_collapsed("GROUP-1")
        assert _room(remote, "groupCollapsed/GROUP-1") is True

    async def test_remove_grouped_item_clears_collapse_flag(self, clock):
        remote, store, sync = _build(clock, room_tree(groups=GROUPS))
        await sync.set_group_collapsed("GROUP-1", True)

        await sync.remove_grouped_item("GROUP-1", CYCLE_ID)

        assert store.grouped_item(CYCLE_ID, "GROUP-1") is None
        assert _room(remote, "groupCollapsed") is None


# ---------------------------------------------------------------------------
# Daily reset
# ---------------------------------------------------------------------------


class TestDailyReset:
    async def test_reset_clears_today_and_expands_categories(self, clock):
        yesterday = NOW - timedelta(days=1)
        tree = room_tree(
            logs={"ITEM-T1": [_log(yesterday), _log(NOW)], "ITEM-T2": [_log(NOW)]},
            last_reset=yesterday,
        )
        tree["categoryCollapsed"] = {"Treatment": True}
        remote, store, sync = _build(clock, tree)

        result = await sync.reset_daily()

        assert result.ok
        assert [e.timestamp for e in store.log_entries(CYCLE_ID, "ITEM-T1")] == [yesterday]
        assert store.log_entries(CYCLE_ID, "ITEM-T2") == []
        assert not store.category_collapsed(Category.TREATMENT)
        assert store.last_reset_date() == clock.start_of_day()
        assert _room(remote, "lastResetDate") == iso(clock.start_of_day())

    async def test_check_runs_once_per_day(self, clock):
        _, _, sync = _build(clock, room_tree(last_reset=NOW - timedelta(days=1)))

        assert (await sync.check_and_reset_if_needed()).ok
        assert await sync.check_and_reset_if_needed() is None

        clock.advance(days=1)
        assert (await sync.check_and_reset_if_needed()).ok

    async def test_check_skips_when_reset_today(self, clock):
        _, _, sync = _build(clock)
        assert await sync.check_and_reset_if_needed() is None

    async def test_check_is_a_no_op_without_cycles(self, clock):
        tree = room_tree(last_reset=None)
        del tree["cycles"]
        remote, _, sync = _build(clock, tree)
        assert await sync.check_and_reset_if_needed() is None
        assert remote.writes == []


# ---------------------------------------------------------------------------
# Cycles, items and members
# ---------------------------------------------------------------------------


def _next_cycle(cycle_id: str = "CYCLE-2") -> Cycle:
    return Cycle(
        id=cycle_id,
        number=2,
        patient_name="Sam",
        start_date=NOW + timedelta(weeks=11),
        food_challenge_date=NOW + timedelta(weeks=23),
    )


class TestCycles:
    async def test_add_cycle_copies_items_and_remaps_groups(self, clock):
        remote, store, sync = _build(clock, room_tree(groups=GROUPS))

        result = await sync.add_cycle(_next_cycle())

        assert result.ok
        copied = {i.name: i for i in store.items("CYCLE-2")}
        assert sorted(copied) == ["Antihistamine", "Cashew", "Peanut"]
        assert not {i.id for i in copied.values()} & {"ITEM-T1", "ITEM-T2", "ITEM-M1"}
        (group,) = store.grouped_items("CYCLE-2")
        assert group.id != "GROUP-1"
        assert group.item_ids == [copied["Peanut"].id, copied["Cashew"].id]
        assert f"rooms/{ROOM_ID}/cycles/CYCLE-2/items" in remote.listener_paths()
        assert set(_room(remote, "cycles/CYCLE-2/items")) == {i.id for i in copied.values()}

    async def test_editing_existing_cycle_keeps_nested_items(self, clock):
        remote, store, sync = _build(clock)
        edited = store.cycle(CYCLE_ID).model_copy(update={"patient_name": "Sammy"})

        await sync.add_cycle(edited)

        assert _room(remote, f"cycles/{CYCLE_ID}/patientName") == "Sammy"
        assert _room(remote, f"cycles/{CYCLE_ID}/items/ITEM-T1") is not None
        assert store.items("CYCLE-2") == []

    async def test_non_admin_cannot_add_cycle(self, clock):
        remote, _, sync = _build(clock, room_tree(is_admin=False))
        with pytest.raises(PermissionDeniedError, match="Only room admins can add cycles"):
            await sync.add_cycle(_next_cycle())
        assert remote.writes == []

    async def test_remove_cycle_keeps_log_by_default(self, clock):
        tree = room_tree(logs={"ITEM-T1": [_log(NOW)]})
        remote, store, sync = _build(clock, tree)

        result = await sync.remove_cycle(CYCLE_ID)

        assert result.ok
        assert store.cycle(CYCLE_ID) is None
        assert _room(remote, f"cycles/{CYCLE_ID}") is None
        assert _room(remote, f"consumptionLog/{CYCLE_ID}/ITEM-T1") is not None
        assert f"rooms/{ROOM_ID}/cycles/{CYCLE_ID}/items" not in remote.listener_paths()

    async def test_remove_cycle_cascades_when_enabled(self, clock):
        tree = room_tree(logs={"ITEM-T1": [_log(NOW)]})
        remote, _, sync = _build(clock, tree, policy=PolicyConfig(cascade_delete=True))

        await sync.remove_cycle(CYCLE_ID)

        assert _room(remote, "consumptionLog") is None


class TestItems:
    async def test_add_item_appends_order_and_registers_unit(self, clock):
        _, store, sync = _build(clock)
        item = Item(id="ITEM-T3", name="Almond", category=Category.TREATMENT, unit="g")

        result = await sync.add_item(item, CYCLE_ID)

        assert result.ok
        assert store.item(CYCLE_ID, "ITEM-T3").order == 3
        assert [u.name for u in store.units()] == ["g", "mL"]

    async def test_remove_item_trims_groups(self, clock):
        _, store, sync = _build(clock, room_tree(groups=GROUPS))
        await sync.remove_item("ITEM-T1", CYCLE_ID)
        assert store.item(CYCLE_ID, "ITEM-T1") is None
        assert store.grouped_item(CYCLE_ID, "GROUP-1").item_ids == ["ITEM-T2"]

    async def test_ensure_item_units(self, clock):
        items = {
            "ITEM-T1": item_record("Peanut", weekly_doses={"1": {"dose": 0.5, "unit": "nuts"}}),
            "ITEM-M1": item_record("Antihistamine", "Medicine", dose=5, unit="ML"),
        }
        _, store, sync = _build(clock, room_tree(items=items))

        assert (await sync.ensure_item_units()).changed
        assert [u.name for u in store.units()] == ["mL", "nuts"]
        assert not (await sync.ensure_item_units()).changed


class TestReactionsAndMembers:
    async def test_add_and_remove_reaction(self, clock):
        remote, store, sync = _build(clock)
        reaction = Reaction(
            id="R1", date=NOW, item_id="ITEM-T1", symptoms=[Symptom.HIVES], user_id=USER_ID
        )

        await sync.add_reaction(reaction)
        assert store.reactions(CYCLE_ID) == [reaction]
        assert _room(remote, f"cycles/{CYCLE_ID}/reactions/R1/symptoms") == ["Hives"]

        await sync.remove_reaction("R1", CYCLE_ID)
        assert store.reactions(CYCLE_ID) == []

    async def test_save_member(self, clock):
        remote, store, sync = _build(clock)
        await sync.save_member(User(id="USER-2", name="Jo", is_admin=False))
        assert store.member("USER-2").name == "Jo"
        assert _room(remote, "users/USER-2/name") == "Jo"
