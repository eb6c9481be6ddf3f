"""Tests for entity schemas, dose formatting and tolerant decoding."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tolerance_sync.models import (
    TIMER_ID_PREFIX,
    Category,
    Cycle,
    Item,
    LogEntry,
    TreatmentTimer,
    User,
    decode_collection,
    decode_consumption_log,
    decode_flags,
    decode_log_entries,
    decode_room_access,
    decode_timer,
    format_dose,
    new_timer_id,
    parse_timestamp,
)

from conftest import NOW, iso

pytestmark = pytest.mark.unit


class TestFormatDose:
    @pytest.mark.parametrize(
        ("dose", "expected"),
        [
            (1.0, "1"),
            (0.5, "1/2"),
            (0.25, "1/4"),
            (0.125, "1/8"),
            (0.333, "1/3"),
            (0.67, "2/3"),
            (0.75, "3/4"),
            (2.0, "2"),
            (12.0, "12"),
            (2.5, "2.5"),
            (0.4, "0.4"),
        ],
    )
    def test_format(self, dose: float, expected: str):
        assert format_dose(dose) == expected


class TestItem:
    def test_weekly_doses_map_is_normalized(self):
        """String week keys and bare numbers decode into typed weekly doses."""
        item = Item.model_validate(
            {
                "id": "I1",
                "name": "Peanut",
                "category": "Treatment",
                "unit": "g",
                "weeklyDoses": {"1": {"dose": 0.5, "unit": "g"}, "3": 2, "x": 9, "4": "bad"},
            }
        )
        assert sorted(item.weekly_doses) == [1, 3]
        assert item.weekly_doses[3].dose == 2.0
        assert item.weekly_doses[3].unit == "g"

    def test_weekly_doses_list_with_holes(self):
        item = Item.model_validate(
            {
                "id": "I1",
                "name": "Egg",
                "category": "Treatment",
                "weeklyDoses": [None, {"dose": "1.5", "unit": "tsp"}],
            }
        )
        assert list(item.weekly_doses) == [1]
        assert item.weekly_doses[1].dose == 1.5

    def test_empty_weekly_doses_become_none(self):
        item = Item.model_validate(
            {"id": "I1", "name": "Egg", "category": "Treatment", "weeklyDoses": {}}
        )
        assert item.weekly_doses is None

    def test_dose_for_week_exact_smaller_and_earliest(self):
        item = Item.model_validate(
            {
                "id": "I1",
                "name": "Peanut",
                "category": "Treatment",
                "weeklyDoses": {"3": {"dose": 1, "unit": "g"}, "6": {"dose": 2, "unit": "g"}},
            }
        )
        assert item.dose_for_week(3)[0] == 3
        assert item.dose_for_week(5)[0] == 3
        assert item.dose_for_week(9)[0] == 6
        assert item.dose_for_week(1)[0] == 3

    def test_display_text_for_treatment_uses_week_dose(self):
        item = Item.model_validate(
            {
                "id": "I1",
                "name": "Peanut",
                "category": "Treatment",
                "weeklyDoses": {"1": {"dose": 0.5, "unit": "g"}},
            }
        )
        assert item.display_text(2) == "Peanut - 1/2 g (Week 1)"

    def test_display_text_for_plain_dose(self):
        item = Item(id="I2", name="Antihistamine", category=Category.MEDICINE, dose=5, unit="mL")
        assert item.display_text(1) == "Antihistamine - 5 mL"

    def test_display_text_name_only(self):
        item = Item(id="I3", name="Walk", category=Category.RECOMMENDED)
        assert item.display_text(1) == "Walk"


class TestCycle:
    def test_week_number_is_one_based(self):
        cycle = Cycle(
            id="C1",
            number=1,
            patient_name="Sam",
            start_date=NOW - timedelta(days=9),
            food_challenge_date=NOW + timedelta(weeks=10),
        )
        assert cycle.week_number(NOW) == 2
        assert cycle.week_number(NOW - timedelta(days=9)) == 1

    def test_profile_image_url_alias(self):
        cycle = Cycle.model_validate(
            {
                "id": "C1",
                "number": 1,
                "patientName": "Sam",
                "startDate": iso(NOW),
                "foodChallengeDate": iso(NOW),
                "profileImageURL": "https://img.example/c1.jpg",
            }
        )
        assert cycle.profile_image_url == "https://img.example/c1.jpg"
        assert cycle.to_remote()["profileImageURL"] == "https://img.example/c1.jpg"

    def test_naive_timestamps_are_treated_as_utc(self):
        cycle = Cycle(
            id="C1",
            number=1,
            patient_name="Sam",
            start_date=datetime(2026, 1, 1, 12, 0),
            food_challenge_date=datetime(2026, 4, 1, 12, 0),
        )
        assert cycle.start_date.tzinfo is UTC


class TestUser:
    def test_unknown_categories_dropped(self):
        user = User.model_validate(
            {
                "id": "U1",
                "name": "Alex",
                "isAdmin": False,
                "remindersEnabled": {"Treatment": True, "Snacks": True},
            }
        )
        assert user.reminders_enabled == {Category.TREATMENT: True}

    def test_owned_rooms_accepts_index_map(self):
        user = User.model_validate(
            {"id": "U1", "name": "Alex", "isAdmin": False, "ownedRooms": {"0": "R1", "1": "R2"}}
        )
        assert user.owned_rooms == ["R1", "R2"]

    def test_active_room_from_room_access(self):
        user = User.model_validate(
            {
                "id": "U1",
                "name": "Alex",
                "isAdmin": False,
                "roomAccess": {"R1": True, "R2": {"joinedAt": iso(NOW), "isActive": True}},
            }
        )
        assert set(user.room_access) == {"R1", "R2"}
        assert user.active_room_id() == "R2"


class TestDecodeRoomAccess:
    def test_legacy_boolean_is_migrated(self):
        access = decode_room_access({"R1": True})
        assert access["R1"].is_active is False

    def test_junk_entries_dropped(self):
        access = decode_room_access({"R1": "junk", "R2": False, "R3": {"isActive": True}})
        assert list(access) == ["R3"]
        assert access["R3"].is_active is True

    def test_non_mapping_is_empty(self):
        assert decode_room_access(None) == {}
        assert decode_room_access(["R1"]) == {}


class TestDecodeCollection:
    def test_skips_malformed_children(self):
        decoded = decode_collection(
            Item,
            {
                "I1": {"name": "Peanut", "category": "Treatment"},
                "I2": {"name": "Bad", "category": "Snacks"},
                "I3": "not a record",
            },
            resource="items",
        )
        assert list(decoded.records) == ["I1"]
        assert decoded.records["I1"].id == "I1"
        assert decoded.skipped == 2
        assert decoded.skipped_ids == {"I2", "I3"}

    def test_list_shaped_collection_uses_embedded_ids(self):
        decoded = decode_collection(
            Item,
            [None, {"id": "I9", "name": "Egg", "category": "Medicine"}, {"id": "I8"}, 3],
            resource="items",
        )
        assert list(decoded.records) == ["I9"]
        assert decoded.skipped == 2
        assert decoded.skipped_ids == {"I8"}

    def test_empty_and_missing_payloads(self):
        assert decode_collection(Item, None, resource="items").records == {}
        assert decode_collection(Item, {}, resource="items").records == {}

    def test_scalar_payload_is_ignored(self):
        decoded = decode_collection(Item, "oops", resource="items")
        assert decoded.records == {}
        assert decoded.skipped == 0


class TestDecodeLogs:
    def test_entries_sorted_and_malformed_skipped(self):
        later = iso(NOW)
        earlier = iso(NOW - timedelta(days=1))
        entries, skipped = decode_log_entries(
            [
                {"timestamp": later, "userId": "U1"},
                {"timestamp": "not a date", "userId": "U1"},
                {"timestamp": earlier, "userId": "U2"},
            ]
        )
        assert [e.user_id for e in entries] == ["U2", "U1"]
        assert skipped == 1

    def test_consumption_log_drops_empty_items(self):
        decoded = decode_consumption_log(
            {"I1": [{"timestamp": iso(NOW), "userId": "U1"}], "I2": [], "I3": None}
        )
        assert list(decoded.records) == ["I1"]

    def test_log_entry_at_truncates_to_seconds(self):
        entry = LogEntry.at(NOW.replace(microsecond=123456), "U1")
        assert entry.timestamp == NOW
        assert LogEntry.model_validate(entry.to_remote()) == entry


class TestScalars:
    def test_decode_flags_keeps_booleans_only(self):
        assert decode_flags({"Treatment": True, "Medicine": "yes", "G1": False}) == {
            "Treatment": True,
            "G1": False,
        }

    def test_parse_timestamp(self):
        assert parse_timestamp(iso(NOW)) == NOW
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(12) is None

    def test_decode_timer(self):
        assert decode_timer(None) is None
        assert decode_timer({"isActive": True}) is None
        timer = decode_timer(
            {
                "id": "treatment_timer_x",
                "isActive": True,
                "endTime": iso(NOW + timedelta(minutes=5)),
            }
        )
        assert timer.is_running(NOW)
        assert timer.remaining_seconds(NOW) == 300

    def test_timer_ids_carry_prefix(self):
        assert new_timer_id().startswith(TIMER_ID_PREFIX)

    def test_inactive_timer_is_not_running(self):
        timer = TreatmentTimer(id="t", is_active=False, end_time=NOW + timedelta(minutes=1))
        assert not timer.is_running(NOW)
