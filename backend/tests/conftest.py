import os

# Tests run against a throwaway SQLite file with the background feed pump off
os.environ.setdefault("DATABASE_PATH", "./test_calendar.db")
os.environ["CHANGE_FEED_POLL_INTERVAL"] = "0"

import uuid  # noqa: E402
from datetime import date, datetime, time, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, delete  # noqa: E402

import slot_store  # noqa: E402
from app import app  # noqa: E402
from db import create_db_and_tables, engine, get_session  # noqa: E402
from migrations.migrate_001_change_feed_triggers import migrate  # noqa: E402
from models import ChangeEvent, Customer, CustomerSession, Slot, SlotsRecurringDate, SlotType  # noqa: E402

# A whole future year keeps every date non-past
YEAR = date.today().year + 1


def first_monday(year: int = YEAR, month: int = 6) -> date:
    day = date(year, month, 1)
    return day + timedelta(days=(7 - day.weekday()) % 7)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute))


def weeks_until_year_end(day: date) -> int:
    """Occurrences of ``day``'s weekday from ``day`` through 31 December."""
    return (date(day.year, 12, 31) - day).days // 7 + 1


@pytest.fixture(scope="function")
def test_session():
    """Create a test database session."""
    create_db_and_tables()
    migrate(engine)
    with Session(engine) as session:
        yield session
        # Clean up all test data after test
        session.rollback()
        for model in (CustomerSession, Slot, SlotsRecurringDate, Customer, ChangeEvent):
            session.exec(delete(model))
        session.commit()


@pytest.fixture(scope="function")
def client(test_session):
    """Create a test client with dependency override."""

    def get_test_session():
        yield test_session

    app.dependency_overrides[get_session] = get_test_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def employee_id():
    return uuid.uuid4()


@pytest.fixture
def monday():
    return first_monday()


@pytest.fixture
def customer(test_session):
    customer = Customer(first_name="Ada", last_name="Lovelace", email="ada@example.com", phone_number="555-0199")
    test_session.add(customer)
    test_session.commit()
    test_session.refresh(customer)
    return customer


@pytest.fixture
def make_slot(test_session):
    """Insert and commit one slot directly through the store."""

    def _make(employee_id, start_time, slot_type=SlotType.AVAILABLE, recurring=False, duration=30):
        row = slot_store.new_slot_row(
            employee_id, start_time, duration=duration, recurring=recurring, slot_type=slot_type
        )
        [slot] = slot_store.insert_slots(test_session, [row], slot_store.ConflictPolicy.FAIL)
        test_session.commit()
        return slot

    return _make


def day_slots(session, employee_id, day):
    return slot_store.fetch_day_slots(session, employee_id, day)


def calendar_state(session, employee_id, year=YEAR):
    """Every slot and marker the employee holds in ``year``, minus write timestamps."""
    start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1)
    slots = [
        (s.id, s.start_time, s.type, s.duration, s.recurring)
        for s in slot_store.fetch_slots_between(session, employee_id, start, end)
    ]
    markers = [m.date for m in slot_store.fetch_recurring_dates(session, employee_id, start.date(), date(year, 12, 31))]
    return slots, markers
