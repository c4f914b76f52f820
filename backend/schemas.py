from datetime import date, datetime, timedelta
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import SlotType

SLOT_DURATIONS = (30, 45, 60)
MINUTES = (0, 15, 30, 45)

T = TypeVar("T")


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _not_past(value: date, name: str) -> date:
    if value < date.today():
        raise ValueError(f"Invalid {name}. Expected non-past date.")
    return value


# --- Rows ---


class SlotRead(CamelModel):
    id: UUID
    employee_id: UUID
    type: SlotType
    start_time: datetime
    duration: int
    recurring: bool
    created_at: datetime
    updated_at: datetime

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        if v not in SLOT_DURATIONS:
            raise ValueError(f"Invalid duration. Expected one of {', '.join(map(str, SLOT_DURATIONS))}.")
        return v


class SessionRead(CamelModel):
    id: UUID
    slot_id: UUID
    employee_id: UUID
    customer_id: UUID
    start_time: datetime
    message: str | None = None
    created_at: datetime
    updated_at: datetime
    customer_full_name: str | None = None
    customer_email: str | None = None
    customer_phone_number: str | None = None


class RecurringDateRead(CamelModel):
    id: UUID
    employee_id: UUID
    date: date


class Normalized(CamelModel):
    """``{byId, allIds}`` projection of one fetched window."""

    by_id: dict
    all_ids: list[UUID]

    @model_validator(mode="after")
    def validate_ids(self):
        if len(self.all_ids) != len(set(self.all_ids)) or set(self.all_ids) != set(self.by_id):
            raise ValueError("byId and allIds must hold the same ids")
        return self

    @classmethod
    def from_rows(cls, rows):
        return cls(by_id={row.id: row for row in rows}, all_ids=[row.id for row in rows])


class NormalizedSlots(Normalized):
    by_id: dict[UUID, SlotRead]


class NormalizedSessions(Normalized):
    by_id: dict[UUID, SessionRead]


class NormalizedRecurringDates(Normalized):
    by_id: dict[UUID, RecurringDateRead]


# --- Operation results ---


class SlotSeries(CamelModel):
    """Rows a series write touched.

    ``adopted_slots`` holds slots that already sat at a series time, as they were
    before the write joined them to the series. ``restored_slots`` holds the rows
    a narrowed undo put back to their earlier ``recurring`` flag.
    """

    slot: SlotRead
    slots: list[SlotRead]
    adopted_slots: list[SlotRead] = Field(default_factory=list)
    restored_slots: list[SlotRead] = Field(default_factory=list)


class SlotHourUpdate(CamelModel):
    prev_hour: int
    slot: SlotRead
    slots: list[SlotRead]


class SlotMinutesUpdate(CamelModel):
    prev_minutes: int
    slot: SlotRead
    slots: list[SlotRead]


class DeletedSlots(CamelModel):
    employee_id: UUID
    slot_ids: list[UUID]
    slots: list[SlotRead]


class RecurringDay(CamelModel):
    recurring_date: RecurringDateRead
    recurring_dates: list[RecurringDateRead]
    slots: list[SlotRead]


class SessionChange(CamelModel):
    session: SessionRead
    slots: list[SlotRead]


class SessionUpdate(CamelModel):
    prev_slot_id: UUID
    prev_start_time: datetime
    session: SessionRead
    slots: list[SlotRead]


class DeletedSession(CamelModel):
    session_id: UUID
    employee_id: UUID
    start_time: datetime
    session: SessionRead
    slots: list[SlotRead]


class Envelope(CamelModel, Generic[T]):
    message: str
    data: T | None = None


# --- Requests ---


class WeekRequest(CamelModel):
    employee_id: UUID
    start: date
    end: date

    @model_validator(mode="after")
    def validate_window(self):
        _not_past(self.end, "end")
        if self.end - self.start != timedelta(days=6):
            raise ValueError("Invalid start and/or end. Expected dates 6 days apart.")
        return self


class DayRequest(CamelModel):
    employee_id: UUID
    day: date

    @field_validator("day")
    @classmethod
    def validate_day(cls, v):
        return _not_past(v, "day")


class RecurringDayRequest(DayRequest):
    slot_ids: list[UUID] | None = None
    dates: list[date] | None = None


class DuplicateDayRequest(DayRequest):
    selected_days: list[date] = Field(min_length=1)

    @field_validator("selected_days")
    @classmethod
    def validate_selected_days(cls, v):
        return sorted({_not_past(d, "selectedDays") for d in v})


class SlotRequest(CamelModel):
    slot_id: UUID


class SeriesRequest(SlotRequest):
    """Retire a series; with ``slot_ids`` only those rows go and ``adopted_slots`` get their flag back."""

    slot_ids: list[UUID] | None = None
    adopted_slots: list[SlotRead] | None = None


class MoveRequest(SlotRequest):
    # limits which follower slots move along with ``slot_id``
    slot_ids: list[UUID] | None = None


class SlotHourRequest(MoveRequest):
    hour: int = Field(strict=True)

    @field_validator("hour")
    @classmethod
    def validate_hour(cls, v):
        if not 0 <= v <= 23:
            raise ValueError("Missing or invalid hour. Expected number between 0 and 23.")
        return v


class SlotMinutesRequest(MoveRequest):
    minutes: int = Field(strict=True)

    @field_validator("minutes")
    @classmethod
    def validate_minutes(cls, v):
        if v not in MINUTES:
            raise ValueError("Missing or invalid minutes. Expected one of 0, 15, 30, 45.")
        return v


class DeleteSlotsRequest(CamelModel):
    employee_id: UUID
    slot_ids: list[UUID] = Field(min_length=1)


class AddSlotsRequest(CamelModel):
    slots: list[SlotRead] = Field(min_length=1)


class AddSessionRequest(CamelModel):
    slot_id: UUID
    customer_id: UUID
    message: str | None = Field(default=None, max_length=1000)


class UpdateSessionRequest(CamelModel):
    session_id: UUID
    slot_id: UUID


class SessionRequest(CamelModel):
    session_id: UUID


class UndoDeleteSessionRequest(CamelModel):
    session: SessionRead


# --- Validation messages ---

_EXPECTATIONS = {
    "uuid": "Expected UUID.",
    "datetime": "Expected ISO timestamp.",
    "date": "Expected YYYY-MM-DD.",
    "int": "Expected number.",
    "bool": "Expected boolean.",
    "string": "Expected string.",
    "list": "Expected list.",
    "too_short": "Expected at least one item.",
}

_FIELD_EXPECTATIONS = {
    "employeeId": "Expected UUID.",
    "slotId": "Expected UUID.",
    "sessionId": "Expected UUID.",
    "customerId": "Expected UUID.",
    "day": "Expected YYYY-MM-DD.",
    "start": "Expected YYYY-MM-DD.",
    "end": "Expected YYYY-MM-DD.",
    "hour": "Expected number between 0 and 23.",
    "minutes": "Expected one of 0, 15, 30, 45.",
}


def describe_validation_error(error: dict) -> str:
    """Turn one pydantic error into a caller-facing sentence."""
    if error.get("type") == "value_error":
        return str(error["ctx"]["error"])
    field = next((part for part in reversed(error.get("loc", ())) if isinstance(part, str)), None)
    if field is None or field == "body":
        return error.get("msg", "Invalid request.")
    if field in _FIELD_EXPECTATIONS:
        return f"Missing or invalid {field}. {_FIELD_EXPECTATIONS[field]}"
    kind = error.get("type", "")
    for prefix, expectation in _EXPECTATIONS.items():
        if kind.startswith(prefix):
            return f"Missing or invalid {field}. {expectation}"
    return f"Missing or invalid {field}. {error.get('msg', '')}".rstrip()
