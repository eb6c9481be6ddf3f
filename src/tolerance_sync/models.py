"""Entity schemas and tolerant decoders for the shared room tree.

Remote payloads are camelCase JSON objects.  Every model ignores unknown keys
and defaults optional ones, and the ``decode_*`` helpers validate records one
at a time so a single malformed record never fails a whole snapshot.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Generic, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# Bumped whenever the cached snapshot envelope changes shape.
DECODER_VERSION = 1

TIMER_ID_PREFIX = "treatment_timer_"

DEFAULT_UNIT_NAMES = ("mg", "g", "tsp", "tbsp", "oz", "mL", "nuts", "fist sized")

_COMMON_FRACTIONS: tuple[tuple[float, str], ...] = (
    (1 / 8, "1/8"),
    (1 / 4, "1/4"),
    (1 / 3, "1/3"),
    (1 / 2, "1/2"),
    (2 / 3, "2/3"),
    (3 / 4, "3/4"),
)
_FRACTION_TOLERANCE = 0.01


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


Timestamp = Annotated[datetime, AfterValidator(_as_utc)]


def new_id() -> str:
    return str(uuid.uuid4()).upper()


class Category(enum.StrEnum):
    """Item category; values match the remote representation."""

    MEDICINE = "Medicine"
    MAINTENANCE = "Maintenance"
    TREATMENT = "Treatment"
    RECOMMENDED = "Recommended"


class Symptom(enum.StrEnum):
    HIVES = "Hives"
    ITCHING = "Itching"
    REDNESS = "Redness"
    COUGHING = "Coughing"
    VOMITING = "Vomiting"
    ANAPHYLAXIS = "Anaphylaxis"
    OTHER = "Other"


class RemoteModel(BaseModel):
    """Base for records stored in the remote tree."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

    def to_remote(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Dose formatting
# ---------------------------------------------------------------------------


def format_dose(dose: float) -> str:
    """Render a dose the way it is shown to caregivers.

    Common kitchen fractions are shown as fractions, whole numbers without a
    decimal point, anything else with one decimal.
    """
    if dose == 1.0:
        return "1"
    for value, text in _COMMON_FRACTIONS:
        if abs(value - dose) < _FRACTION_TOLERANCE:
            return text
    if float(dose).is_integer():
        return str(int(dose))
    return f"{dose:.1f}"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Cycle(RemoteModel):
    id: str
    number: int
    patient_name: str
    start_date: Timestamp
    food_challenge_date: Timestamp
    profile_image_url: str | None = Field(default=None, alias="profileImageURL")

    def week_number(self, now: datetime) -> int:
        """1-based week of the cycle containing *now*."""
        days = (now - self.start_date).days
        return days // 7 + 1


class WeeklyDose(RemoteModel):
    dose: float
    unit: str = ""


def _coerce_dose_value(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _parse_weekly_doses(raw: Any, fallback_unit: str) -> dict[int, dict[str, Any]]:
    if isinstance(raw, dict):
        pairs = raw.items()
    elif isinstance(raw, list):
        pairs = enumerate(raw)
    else:
        return {}

    parsed: dict[int, dict[str, Any]] = {}
    for key, value in pairs:
        try:
            week = int(key)
        except (TypeError, ValueError):
            continue
        if isinstance(value, dict):
            dose = _coerce_dose_value(value.get("dose"))
            unit = value.get("unit")
            unit = unit if isinstance(unit, str) and unit else fallback_unit
        else:
            dose = _coerce_dose_value(value)
            unit = fallback_unit
        if dose is None:
            continue
        parsed[week] = {"dose": dose, "unit": unit}
    return parsed


class Item(RemoteModel):
    id: str
    name: str
    category: Category
    dose: float | None = None
    unit: str | None = None
    weekly_doses: dict[int, WeeklyDose] | None = None
    order: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize_weekly_doses(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw = data.get("weeklyDoses", data.get("weekly_doses"))
        data = {k: v for k, v in data.items() if k not in ("weeklyDoses", "weekly_doses")}
        if raw is None or (
            isinstance(raw, dict) and all(isinstance(v, WeeklyDose) for v in raw.values())
        ):
            data["weeklyDoses"] = raw or None
            return data
        unit = data.get("unit")
        parsed = _parse_weekly_doses(raw, unit if isinstance(unit, str) else "")
        data["weeklyDoses"] = parsed or None
        return data

    def dose_for_week(self, week: int) -> tuple[int, WeeklyDose] | None:
        """Week-indexed dose: exact week, else closest smaller, else earliest."""
        if not self.weekly_doses:
            return None
        if week in self.weekly_doses:
            return week, self.weekly_doses[week]
        weeks = sorted(self.weekly_doses)
        smaller = [w for w in weeks if w <= week]
        chosen = smaller[-1] if smaller else weeks[0]
        return chosen, self.weekly_doses[chosen]

    def display_text(self, week: int) -> str:
        if self.category is Category.TREATMENT:
            found = self.dose_for_week(week)
            if found is not None:
                shown_week, dose = found
                return f"{self.name} - {format_dose(dose.dose)} {dose.unit} (Week {shown_week})"
        if self.dose is not None and self.unit is not None:
            return f"{self.name} - {format_dose(self.dose)} {self.unit}"
        return self.name


class Unit(RemoteModel):
    id: str
    name: str = Field(min_length=1)


class GroupedItem(RemoteModel):
    id: str
    name: str
    category: Category
    item_ids: list[str] = Field(default_factory=list)


class LogEntry(RemoteModel):
    """One consumption record; the remote key for the time is ``timestamp``."""

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, alias_generator=to_camel, frozen=True
    )

    timestamp: Timestamp
    user_id: str

    @classmethod
    def at(cls, when: datetime, user_id: str) -> LogEntry:
        # Remote timestamps carry second precision.
        return cls(timestamp=_as_utc(when).replace(microsecond=0), user_id=user_id)


class Reaction(RemoteModel):
    id: str
    date: Timestamp
    item_id: str | None = None
    symptoms: list[Symptom] = Field(default_factory=list)
    other_symptom: str | None = None
    description: str = ""
    user_id: str

    @field_validator("symptoms", mode="before")
    @classmethod
    def _drop_unknown_symptoms(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        known = {s.value for s in Symptom}
        return [v for v in value if v in known]


class RoomAccess(RemoteModel):
    joined_at: Timestamp = Field(default_factory=lambda: datetime.now(UTC))
    is_active: bool = False


def decode_room_access(value: Any) -> dict[str, RoomAccess]:
    """Decode a ``roomAccess`` map, migrating the legacy boolean shape."""
    if not isinstance(value, dict):
        return {}
    migrated: dict[str, RoomAccess] = {}
    for room_id, access in value.items():
        if isinstance(access, RoomAccess):
            migrated[str(room_id)] = access
        elif isinstance(access, dict):
            record = decode_record(RoomAccess, access, resource="roomAccess")
            if record is not None:
                migrated[str(room_id)] = record
        elif access is True:
            # Legacy shape: roomAccess/<roomId> = true
            migrated[str(room_id)] = RoomAccess(is_active=False)
    return migrated


def _filter_category_keys(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        return {}
    known = {c.value for c in Category}
    return {k: v for k, v in value.items() if k in known and v is not None}


class User(RemoteModel):
    id: str
    name: str
    is_admin: bool
    auth_id: str | None = None
    reminders_enabled: dict[Category, bool] = Field(default_factory=dict)
    reminder_times: dict[Category, Timestamp] = Field(default_factory=dict)
    treatment_food_timer_enabled: bool = False
    treatment_timer_duration: float = 900.0
    owned_rooms: list[str] = Field(default_factory=list)
    subscription_plan: str | None = None
    room_limit: int = 0
    room_access: dict[str, RoomAccess] = Field(default_factory=dict)

    @field_validator("reminders_enabled", "reminder_times", mode="before")
    @classmethod
    def _known_categories(cls, value: Any) -> dict[str, Any]:
        return _filter_category_keys(value)

    @field_validator("room_access", mode="before")
    @classmethod
    def _migrate_room_access(cls, value: Any) -> dict[str, Any]:
        return decode_room_access(value)

    @field_validator("owned_rooms", mode="before")
    @classmethod
    def _owned_rooms_list(cls, value: Any) -> list[str]:
        if isinstance(value, dict):
            return [str(v) for v in value.values() if isinstance(v, str)]
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, str)]

    def active_room_id(self) -> str | None:
        for room_id, access in self.room_access.items():
            if access.is_active:
                return room_id
        return None


class TreatmentTimer(RemoteModel):
    id: str
    is_active: bool
    end_time: Timestamp
    associated_item_ids: list[str] = Field(default_factory=list)
    notification_ids: list[str] = Field(default_factory=list)
    room_name: str | None = None

    def remaining_seconds(self, now: datetime) -> float:
        return (self.end_time - now).total_seconds()

    def is_running(self, now: datetime) -> bool:
        return self.is_active and self.end_time > now


def new_timer_id() -> str:
    return f"{TIMER_ID_PREFIX}{uuid.uuid4()}"


class InvitationStatus(enum.StrEnum):
    INVITED = "invited"
    SENT = "sent"
    CREATED = "created"
    ACCEPTED = "accepted"


class Invitation(RemoteModel):
    room_id: str
    is_admin: bool = False
    status: InvitationStatus = InvitationStatus.CREATED
    created_by: str | None = None
    accepted_by: str | None = None


# ---------------------------------------------------------------------------
# Tolerant decoding
# ---------------------------------------------------------------------------

M = TypeVar("M", bound=BaseModel)


@dataclass
class Decoded(Generic[M]):
    """Records decoded from one snapshot plus the children that were skipped."""

    records: dict[str, M] = field(default_factory=dict)
    skipped: int = 0
    # ids of skipped children, where the snapshot names them
    skipped_ids: set[str] = field(default_factory=set)


def _iter_children(payload: Any) -> list[tuple[str, Any]]:
    if isinstance(payload, dict):
        return [(str(k), v) for k, v in payload.items()]
    if isinstance(payload, list):
        # Sparse remote arrays arrive as lists with null holes.
        return [(str(i), v) for i, v in enumerate(payload) if v is not None]
    return []


def decode_record(
    model: type[M], payload: Any, *, resource: str, key: str | None = None
) -> M | None:
    """Validate one record, logging and returning ``None`` when malformed."""
    if not isinstance(payload, dict):
        logger.warning(
            "Skipping %s record %s: expected an object, got %s",
            resource,
            key,
            type(payload).__name__,
        )
        return None
    data = payload if key is None else {**payload, "id": key}
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        logger.warning("Skipping malformed %s record %s (invalid: %s)", resource, key, fields)
        return None


def _embedded_id(child: Any) -> str | None:
    if isinstance(child, dict) and isinstance(child.get("id"), str):
        return child["id"]
    return None


def decode_collection(model: type[M], payload: Any, *, resource: str) -> Decoded[M]:
    """Decode an id-keyed collection snapshot, skipping malformed children."""
    decoded: Decoded[M] = Decoded()
    if payload is None:
        return decoded
    if isinstance(payload, dict | list) and not payload:
        return decoded
    children = _iter_children(payload)
    if not children:
        logger.warning(
            "Ignoring %s snapshot of unexpected shape: %s", resource, type(payload).__name__
        )
        return decoded
    for key, child in children:
        # List-shaped collections carry their id inside the record.
        record_key = key if isinstance(payload, dict) else None
        record = decode_record(model, child, resource=resource, key=record_key)
        if record is None:
            decoded.skipped += 1
            skipped_id = record_key or _embedded_id(child)
            if skipped_id is not None:
                decoded.skipped_ids.add(skipped_id)
            continue
        decoded.records[getattr(record, "id", key)] = record
    return decoded


def decode_log_entries(payload: Any) -> tuple[list[LogEntry], int]:
    entries: list[LogEntry] = []
    skipped = 0
    for _, child in _iter_children(payload):
        entry = decode_record(LogEntry, child, resource="consumptionLog")
        if entry is None:
            skipped += 1
            continue
        entries.append(entry)
    entries.sort(key=lambda e: e.timestamp)
    return entries, skipped


def decode_consumption_log(payload: Any) -> Decoded[list[LogEntry]]:
    """Decode ``consumptionLog/<cycleId>``: item id -> entries."""
    decoded: Decoded[list[LogEntry]] = Decoded()
    if not isinstance(payload, dict):
        if payload is not None:
            logger.warning("Ignoring consumptionLog snapshot of unexpected shape")
        return decoded
    for item_id, raw_entries in payload.items():
        entries, skipped = decode_log_entries(raw_entries)
        decoded.skipped += skipped
        if entries:
            decoded.records[str(item_id)] = entries
    return decoded


def decode_flags(payload: Any) -> dict[str, bool]:
    if not isinstance(payload, dict):
        return {}
    return {str(k): v for k, v in payload.items() if isinstance(v, bool)}


def decode_timer(payload: Any) -> TreatmentTimer | None:
    if payload is None:
        return None
    return decode_record(TreatmentTimer, payload, resource="treatmentTimer")


def encode_log_entries(entries: list[LogEntry]) -> list[dict[str, Any]] | None:
    if not entries:
        return None
    return [entry.to_remote() for entry in sorted(entries, key=lambda e: e.timestamp)]


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None
