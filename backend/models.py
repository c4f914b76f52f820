import uuid
from datetime import date as calendar_date, datetime
from enum import Enum

from sqlmodel import Field, SQLModel, UniqueConstraint


class SlotType(str, Enum):
    AVAILABLE = "AVAILABLE"
    BLOCKED = "BLOCKED"
    BOOKED = "BOOKED"


class Slot(SQLModel, table=True):
    __tablename__ = "slots"
    __table_args__ = (UniqueConstraint("employee_id", "start_time", name="uniq_slots_employee_start"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    employee_id: uuid.UUID = Field(index=True)
    type: SlotType = Field(default=SlotType.AVAILABLE)
    start_time: datetime = Field(index=True)  # server time, minute-granular
    duration: int = Field(default=30)  # minutes: 30, 45 or 60
    recurring: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class CustomerSession(SQLModel, table=True):
    """A booking. Named apart from sqlmodel.Session; stored as ``sessions``."""

    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("slot_id", name="uniq_sessions_slot"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    slot_id: uuid.UUID = Field(index=True)
    employee_id: uuid.UUID = Field(index=True)
    customer_id: uuid.UUID = Field(index=True)
    start_time: datetime = Field(index=True)  # copy of the bound slot's start_time
    message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class SlotsRecurringDate(SQLModel, table=True):
    __tablename__ = "slots_recurring_dates"
    __table_args__ = (UniqueConstraint("employee_id", "date", name="uniq_recurring_dates_employee_date"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    employee_id: uuid.UUID = Field(index=True)
    date: calendar_date = Field(index=True)


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    first_name: str
    last_name: str
    email: str | None = Field(default=None)
    phone_number: str | None = Field(default=None)


class ChangeEvent(SQLModel, table=True):
    """Outbox row written by the slots/sessions triggers."""

    __tablename__ = "change_events"

    id: int | None = Field(default=None, primary_key=True)
    topic: str = Field(index=True)  # 'slots' or 'sessions'
    event_action: str  # 'create', 'update' or 'delete'
    row_data: str  # JSON snapshot of the changed row
    created_at: datetime = Field(default_factory=datetime.now)
