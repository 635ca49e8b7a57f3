# healthtracker/models.py
"""
Value records for the health tracker and the helpers that derive what the
screens show from them.

Medication and HealthMetric are built from server JSON and never mutated;
every change goes through the server and a full re-fetch.  The two draft
classes hold what the add forms collect before it is posted.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

REPEAT_TYPES = ("daily", "weekly", "custom", "never")
REPEAT_LABELS = {
    "daily": "Daily",
    "weekly": "Weekly",
    "custom": "Custom",
    "never": "Once",
}

BLOOD_SUGAR = "blood_sugar"
BLOOD_PRESSURE = "blood_pressure"
METRIC_TYPES = (BLOOD_SUGAR, BLOOD_PRESSURE)

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

EARLIEST_METRIC_DATE = datetime(2000, 1, 1)


class InvalidPayload(ValueError):
    """Server JSON that cannot be turned into records."""


class ValidationError(ValueError):
    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        super().__init__("; ".join(f"{k}: {v}" for k, v in self.errors.items()))


# -------------------------
# JSON decoding helpers
# -------------------------
def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 date-time from the server.

    Offset-aware values are converted to naive local time so every timestamp
    in the app compares against datetime.now().
    """
    if isinstance(value, datetime):
        dt = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise InvalidPayload(f"bad timestamp: {value!r}")
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidPayload(f"bad timestamp: {value!r}") from None
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return value == 1


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise InvalidPayload(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPayload(f"{key} must be an integer, got {value!r}") from None


def _custom_days(value: Any) -> Tuple[bool, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            raise InvalidPayload(f"bad custom_days: {value!r}") from None
    if not isinstance(value, (list, tuple)):
        raise InvalidPayload(f"bad custom_days: {value!r}")
    return tuple(_flag(v) for v in value)


def _require(data: Dict[str, Any], *keys: str):
    if not isinstance(data, dict):
        raise InvalidPayload(f"expected an object, got {type(data).__name__}")
    missing = [k for k in keys if k not in data]
    if missing:
        raise InvalidPayload(f"missing keys: {', '.join(missing)}")


# -------------------------
# Records
# -------------------------
@dataclass(frozen=True)
class Medication:
    id: int
    name: str
    dosage: str
    time: str
    next_due_time: datetime
    repeat_type: str
    custom_days: Tuple[bool, ...] = ()
    is_completed: bool = False
    is_overdue: bool = False

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Medication":
        _require(data, "id", "name", "dosage", "time", "next_due_time", "repeat_type")
        return cls(
            id=_int(data["id"], "id"),
            name=str(data["name"]),
            dosage=str(data["dosage"]),
            time=str(data["time"]),
            next_due_time=parse_timestamp(data["next_due_time"]),
            repeat_type=str(data["repeat_type"]),
            custom_days=_custom_days(data.get("custom_days")),
            is_completed=_flag(data.get("is_completed")),
            is_overdue=_flag(data.get("is_overdue")),
        )

    @property
    def repeat_label(self) -> str:
        return REPEAT_LABELS.get(self.repeat_type, "")

    @property
    def custom_weekdays(self) -> List[str]:
        return [WEEKDAYS[i] for i, on in enumerate(self.custom_days[:7]) if on]

    def past_due(self, now: Optional[datetime] = None) -> bool:
        # server's is_overdue stays authoritative for display and ordering
        now = now or datetime.now()
        return self.next_due_time <= now

    def subtitle_lines(self) -> List[str]:
        lines = [
            f"Dosage: {self.dosage}",
            f"Next: {format_clock(self.next_due_time.hour, self.next_due_time.minute)} ({self.repeat_label})",
        ]
        if self.is_overdue:
            lines.append("OVERDUE")
        return lines


@dataclass(frozen=True)
class HealthMetric:
    id: int
    type: str
    value: str
    timestamp: datetime

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "HealthMetric":
        _require(data, "id", "type", "value", "timestamp")
        value = data["value"]
        if value is None:
            raise InvalidPayload("value must not be null")
        return cls(
            id=_int(data["id"], "id"),
            type=str(data["type"]),
            value=str(value),
            timestamp=parse_timestamp(data["timestamp"]),
        )

    @property
    def is_blood_sugar(self) -> bool:
        return self.type == BLOOD_SUGAR

    @property
    def title(self) -> str:
        if self.is_blood_sugar:
            return f"Blood Sugar: {self.value} mg/dL"
        return f"Blood Pressure: {self.value}"

    @property
    def subtitle(self) -> str:
        return format_date_time(self.timestamp)


def medications_from_json(items: Any) -> List[Medication]:
    if not isinstance(items, list):
        raise InvalidPayload(f"expected a list of medications, got {type(items).__name__}")
    return [Medication.from_json(i) for i in items]


def health_metrics_from_json(items: Any) -> List[HealthMetric]:
    if not isinstance(items, list):
        raise InvalidPayload(f"expected a list of health metrics, got {type(items).__name__}")
    return [HealthMetric.from_json(i) for i in items]


# -------------------------
# Ordering
# -------------------------
def sort_medications(meds: Iterable[Medication]) -> List[Medication]:
    """Overdue first, then soonest due."""
    return sorted(meds, key=lambda m: (not m.is_overdue, m.next_due_time))


def sort_health_metrics(metrics: Iterable[HealthMetric]) -> List[HealthMetric]:
    """Newest first."""
    return sorted(metrics, key=lambda m: m.timestamp, reverse=True)


# -------------------------
# Display formatting
# -------------------------
def format_clock(hour: int, minute: int) -> str:
    h12 = hour % 12 or 12
    return f"{h12}:{minute:02d} {'AM' if hour < 12 else 'PM'}"


def format_date_time(dt: datetime) -> str:
    return f"{_MONTHS[dt.month - 1]} {dt.day}, {dt.year} - {format_clock(dt.hour, dt.minute)}"


# -------------------------
# Add-form drafts
# -------------------------
@dataclass
class MedicationDraft:
    name: str = ""
    dosage: str = ""
    hour: int = 9
    minute: int = 0
    repeat_type: str = "daily"
    custom_days: List[bool] = field(default_factory=lambda: [False] * 7)

    @property
    def time_text(self) -> str:
        return format_clock(self.hour, self.minute)

    def next_due_time(self, now: Optional[datetime] = None) -> datetime:
        # today at the chosen time, even if that is already past
        now = now or datetime.now()
        return now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)

    def validate(self):
        errors = {}
        if not self.name:
            errors["name"] = "Please enter a name"
        if not self.dosage:
            errors["dosage"] = "Please enter a dosage"
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            errors["time"] = "Please pick a valid time"
        if self.repeat_type not in REPEAT_TYPES:
            errors["repeat_type"] = f"Unknown repeat type: {self.repeat_type}"
        if len(self.custom_days) != 7:
            errors["custom_days"] = "Expected one flag per weekday"
        if errors:
            raise ValidationError(errors)

    def form_fields(self) -> Dict[str, str]:
        self.validate()
        return {
            "name": self.name,
            "dosage": self.dosage,
            "time": self.time_text,
            "repeat_type": self.repeat_type,
            "custom_days": json.dumps([bool(d) for d in self.custom_days], separators=(",", ":")),
        }


@dataclass
class HealthMetricDraft:
    type: str = BLOOD_SUGAR
    value: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now().replace(second=0, microsecond=0))

    @property
    def value_label(self) -> str:
        if self.type == BLOOD_SUGAR:
            return "Blood Sugar (mg/dL)"
        return "Blood Pressure (systolic/diastolic)"

    @property
    def value_hint(self) -> str:
        return "120" if self.type == BLOOD_SUGAR else "120/80"

    def validate(self, now: Optional[datetime] = None):
        errors = {}
        if self.type not in METRIC_TYPES:
            errors["type"] = f"Unknown metric type: {self.type}"
        if not self.value:
            errors["value"] = "Please enter a value"
        elif self.type == BLOOD_SUGAR:
            try:
                float(self.value)
            except ValueError:
                errors["value"] = "Please enter a valid number"
        elif "/" not in self.value:
            errors["value"] = "Please use format: systolic/diastolic"
        latest = (now or datetime.now()) + timedelta(days=1)
        if not (EARLIEST_METRIC_DATE <= self.timestamp <= latest):
            errors["timestamp"] = "Please pick a date between 2000 and tomorrow"
        if errors:
            raise ValidationError(errors)

    def form_fields(self, now: Optional[datetime] = None) -> Dict[str, str]:
        self.validate(now)
        return {
            "type": self.type,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
        }
