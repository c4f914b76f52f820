"""Slot Store: row-level reads and writes over ``slots`` and ``slots_recurring_dates``.

Every write goes through SQLAlchemy Core against the model tables so the
statements behave the same on PostgreSQL and SQLite, and every call returns
validated ``SlotRead`` / ``RecurringDateRead`` rows.
"""
import logging
import uuid
from datetime import date, datetime, time, timedelta
from enum import Enum

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session

from db import is_postgres
from models import CustomerSession, Slot, SlotsRecurringDate, SlotType
from schemas import RecurringDateRead, SlotRead

logger = logging.getLogger(__name__)

slots = Slot.__table__
sessions = CustomerSession.__table__
recurring_dates = SlotsRecurringDate.__table__

DEFAULT_DURATION = 30
SLOT_KEY = ["employee_id", "start_time"]


class ConflictPolicy(str, Enum):
    """What a bulk insert does when ``(employee_id, start_time)`` is taken."""

    ADOPT = "adopt"  # the existing slot joins the series: recurring = true
    SKIP = "skip"  # the existing slot is left alone, nothing is inserted
    FAIL = "fail"  # the uniqueness violation propagates


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` range covering one calendar day."""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _slot(row) -> SlotRead:
    return SlotRead.model_validate(dict(row))


def _recurring_date(row) -> RecurringDateRead:
    return RecurringDateRead.model_validate(dict(row))


def _insert(session: Session):
    return postgresql.insert if is_postgres(session.get_bind()) else sqlite.insert


def new_slot_row(
    employee_id: uuid.UUID,
    start_time: datetime,
    duration: int = DEFAULT_DURATION,
    recurring: bool = False,
    slot_type: SlotType = SlotType.AVAILABLE,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now()
    return {
        "id": uuid.uuid4(),
        "employee_id": employee_id,
        "type": slot_type,
        "start_time": start_time,
        "duration": duration,
        "recurring": recurring,
        "created_at": now,
        "updated_at": now,
    }


# --- Reads ---


def fetch_slot(session: Session, slot_id: uuid.UUID) -> SlotRead | None:
    row = session.execute(select(slots).where(slots.c.id == slot_id)).mappings().first()
    return _slot(row) if row else None


def fetch_slot_at(session: Session, employee_id: uuid.UUID, start_time: datetime) -> SlotRead | None:
    row = (
        session.execute(
            select(slots).where(slots.c.employee_id == employee_id, slots.c.start_time == start_time)
        )
        .mappings()
        .first()
    )
    return _slot(row) if row else None


def fetch_slots_at(session: Session, employee_id: uuid.UUID, instants: list[datetime]) -> list[SlotRead]:
    if not instants:
        return []
    rows = session.execute(
        select(slots)
        .where(slots.c.employee_id == employee_id, slots.c.start_time.in_(instants))
        .order_by(slots.c.start_time)
    ).mappings()
    return [_slot(row) for row in rows]


def fetch_slots_by_ids(session: Session, employee_id: uuid.UUID, slot_ids: list[uuid.UUID]) -> list[SlotRead]:
    rows = session.execute(
        select(slots)
        .where(slots.c.employee_id == employee_id, slots.c.id.in_(slot_ids))
        .order_by(slots.c.start_time)
    ).mappings()
    return [_slot(row) for row in rows]


def fetch_slots_between(
    session: Session,
    employee_id: uuid.UUID,
    start: datetime,
    end: datetime,
    slot_type: SlotType | None = None,
) -> list[SlotRead]:
    """Slots starting in ``[start, end)``, ordered by start time."""
    query = select(slots).where(
        slots.c.employee_id == employee_id,
        slots.c.start_time >= start,
        slots.c.start_time < end,
    )
    if slot_type is not None:
        query = query.where(slots.c.type == slot_type)
    rows = session.execute(query.order_by(slots.c.start_time)).mappings()
    return [_slot(row) for row in rows]


def fetch_day_slots(
    session: Session, employee_id: uuid.UUID, day: date, slot_type: SlotType | None = None
) -> list[SlotRead]:
    start, end = day_bounds(day)
    return fetch_slots_between(session, employee_id, start, end, slot_type)


# --- Writes ---


def insert_slots(session: Session, rows: list[dict], policy: ConflictPolicy) -> list[SlotRead]:
    """Insert rows one statement at a time, resolving collisions by ``policy``.

    Returns the rows that were inserted or adopted, in input order. Rows skipped
    under ``ConflictPolicy.SKIP`` are not returned.
    """
    written = []
    for values in rows:
        if policy is ConflictPolicy.FAIL:
            stmt = slots.insert().values(**values)
        else:
            stmt = _insert(session)(slots).values(**values)
            if policy is ConflictPolicy.ADOPT:
                stmt = stmt.on_conflict_do_update(
                    index_elements=SLOT_KEY,
                    set_={"recurring": True, "updated_at": values["updated_at"]},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=SLOT_KEY)
        row = session.execute(stmt.returning(*slots.c)).mappings().first()
        if row is not None:
            written.append(_slot(row))
    logger.info(f"Wrote {len(written)} of {len(rows)} slots ({policy.value})")
    return written


def update_slot(session: Session, slot_id: uuid.UUID, **values) -> SlotRead | None:
    values.setdefault("updated_at", datetime.now())
    row = (
        session.execute(update(slots).where(slots.c.id == slot_id).values(**values).returning(*slots.c))
        .mappings()
        .first()
    )
    return _slot(row) if row else None


def sync_session_start(session: Session, slot: SlotRead) -> None:
    """Keep the denormalized start time of a session bound to ``slot`` current."""
    if slot.type is not SlotType.BOOKED:
        return
    session.execute(
        update(sessions)
        .where(sessions.c.slot_id == slot.id)
        .values(start_time=slot.start_time, updated_at=datetime.now())
    )


def delete_slots_by_ids(
    session: Session, employee_id: uuid.UUID, slot_ids: list[uuid.UUID], keep_booked: bool = False
) -> list[SlotRead]:
    if not slot_ids:
        return []
    stmt = delete(slots).where(slots.c.employee_id == employee_id, slots.c.id.in_(slot_ids))
    if keep_booked:
        stmt = stmt.where(slots.c.type != SlotType.BOOKED)
    rows = session.execute(stmt.returning(*slots.c)).mappings()
    return sorted((_slot(row) for row in rows), key=lambda s: s.start_time)


def delete_unbooked_at(session: Session, employee_id: uuid.UUID, instants: list[datetime]) -> list[SlotRead]:
    """Delete the employee's slots at ``instants``; booked slots stay."""
    if not instants:
        return []
    rows = session.execute(
        delete(slots)
        .where(
            slots.c.employee_id == employee_id,
            slots.c.start_time.in_(instants),
            slots.c.type != SlotType.BOOKED,
        )
        .returning(*slots.c)
    ).mappings()
    return sorted((_slot(row) for row in rows), key=lambda s: s.start_time)


def purge_past_slots(session: Session, employee_id: uuid.UUID, now: datetime) -> int:
    result = session.execute(
        delete(slots).where(
            slots.c.employee_id == employee_id,
            slots.c.start_time < now,
            slots.c.type != SlotType.BOOKED,
        )
    )
    if result.rowcount:
        logger.info(f"Purged {result.rowcount} past slots for employee {employee_id}")
    return result.rowcount or 0


# --- Day recurrence markers ---


def fetch_recurring_dates(
    session: Session, employee_id: uuid.UUID, start: date, end: date
) -> list[RecurringDateRead]:
    """Markers dated within ``[start, end]``."""
    rows = session.execute(
        select(recurring_dates)
        .where(
            recurring_dates.c.employee_id == employee_id,
            recurring_dates.c.date >= start,
            recurring_dates.c.date <= end,
        )
        .order_by(recurring_dates.c.date)
    ).mappings()
    return [_recurring_date(row) for row in rows]


def is_recurring_day(session: Session, employee_id: uuid.UUID, day: date) -> bool:
    return bool(fetch_recurring_dates(session, employee_id, day, day))


def insert_recurring_dates(session: Session, employee_id: uuid.UUID, days: list[date]) -> list[RecurringDateRead]:
    """Mark ``days`` as recurring; days already marked are skipped."""
    written = []
    for day in days:
        stmt = (
            _insert(session)(recurring_dates)
            .values(id=uuid.uuid4(), employee_id=employee_id, date=day)
            .on_conflict_do_nothing(index_elements=["employee_id", "date"])
            .returning(*recurring_dates.c)
        )
        row = session.execute(stmt).mappings().first()
        if row is not None:
            written.append(_recurring_date(row))
    return written


def delete_recurring_dates(session: Session, employee_id: uuid.UUID, days: list[date]) -> list[RecurringDateRead]:
    rows = session.execute(
        delete(recurring_dates)
        .where(recurring_dates.c.employee_id == employee_id, recurring_dates.c.date.in_(days))
        .returning(*recurring_dates.c)
    ).mappings()
    return sorted((_recurring_date(row) for row in rows), key=lambda r: r.date)
