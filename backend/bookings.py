"""Booking Transition Service.

A session always holds exactly one BOOKED slot. Every transition below flips
slot types and writes the session row in the caller's transaction, so a failure
at any step leaves both slots and the session untouched.
"""
import logging
import uuid
from datetime import date, datetime

from sqlalchemy import delete, insert, select, update
from sqlmodel import Session

import slot_store as store
from errors import SchedulingError
from models import Customer, CustomerSession, SlotType
from schemas import DeletedSession, SessionChange, SessionRead, SessionUpdate, SlotRead

logger = logging.getLogger(__name__)

sessions = CustomerSession.__table__
customers = Customer.__table__


def _session_query():
    """Sessions with the customer fields denormalized for display."""
    return select(
        sessions,
        (customers.c.first_name + " " + customers.c.last_name).label("customer_full_name"),
        customers.c.email.label("customer_email"),
        customers.c.phone_number.label("customer_phone_number"),
    ).select_from(sessions.outerjoin(customers, customers.c.id == sessions.c.customer_id))


def fetch_session(session: Session, session_id: uuid.UUID) -> SessionRead | None:
    row = session.execute(_session_query().where(sessions.c.id == session_id)).mappings().first()
    return SessionRead.model_validate(dict(row)) if row else None


def get_week_sessions(session: Session, employee_id: uuid.UUID, start: date, end: date) -> list[SessionRead]:
    window_start, _ = store.day_bounds(start)
    _, window_end = store.day_bounds(end)
    rows = session.execute(
        _session_query()
        .where(
            sessions.c.employee_id == employee_id,
            sessions.c.start_time >= window_start,
            sessions.c.start_time < window_end,
        )
        .order_by(sessions.c.start_time)
    ).mappings()
    return [SessionRead.model_validate(dict(row)) for row in rows]


def _require_session(session: Session, session_id: uuid.UUID) -> SessionRead:
    found = fetch_session(session, session_id)
    if found is None:
        raise SchedulingError("Session not found.")
    return found


def _book(session: Session, slot_id: uuid.UUID) -> SlotRead:
    """AVAILABLE -> BOOKED for one slot."""
    slot = store.fetch_slot(session, slot_id)
    if slot is None:
        raise SchedulingError("Slot not found.")
    if slot.type is not SlotType.AVAILABLE:
        raise SchedulingError("Slot is not available.")
    return store.update_slot(session, slot_id, type=SlotType.BOOKED)


def _release(session: Session, slot_id: uuid.UUID) -> list[SlotRead]:
    """BOOKED -> AVAILABLE; a slot that no longer exists is skipped."""
    freed = store.update_slot(session, slot_id, type=SlotType.AVAILABLE)
    if freed is None:
        logger.warning(f"Session slot {slot_id} was missing while releasing it")
        return []
    return [freed]


def _insert_session(session: Session, slot: SlotRead, **values) -> SessionRead:
    now = datetime.now()
    values.setdefault("id", uuid.uuid4())
    values.setdefault("created_at", now)
    session.execute(
        insert(sessions).values(
            slot_id=slot.id,
            employee_id=slot.employee_id,
            start_time=slot.start_time,
            updated_at=now,
            **values,
        )
    )
    return fetch_session(session, values["id"])


def add_session(
    session: Session, slot_id: uuid.UUID, customer_id: uuid.UUID, message: str | None = None
) -> SessionChange:
    booked = _book(session, slot_id)
    created = _insert_session(session, booked, customer_id=customer_id, message=message)
    logger.info(f"Booked slot {slot_id} for customer {customer_id}")
    return SessionChange(session=created, slots=[booked])


def update_session(session: Session, session_id: uuid.UUID, slot_id: uuid.UUID) -> SessionUpdate:
    """Reschedule: free the current slot, book the target, repoint the session."""
    current = _require_session(session, session_id)
    if current.slot_id == slot_id:
        raise SchedulingError("Session is already in this slot.")
    target = store.fetch_slot(session, slot_id)
    if target is not None and target.employee_id != current.employee_id:
        raise SchedulingError("Slot belongs to another employee.")
    freed = _release(session, current.slot_id)
    booked = _book(session, slot_id)
    session.execute(
        update(sessions)
        .where(sessions.c.id == session_id)
        .values(slot_id=booked.id, start_time=booked.start_time, updated_at=datetime.now())
    )
    logger.info(f"Rescheduled session {session_id} from {current.start_time} to {booked.start_time}")
    return SessionUpdate(
        prev_slot_id=current.slot_id,
        prev_start_time=current.start_time,
        session=fetch_session(session, session_id),
        slots=[*freed, booked],
    )


def delete_session(session: Session, session_id: uuid.UUID) -> DeletedSession:
    """Cancel a session and hand its slot back as AVAILABLE."""
    current = _require_session(session, session_id)
    session.execute(delete(sessions).where(sessions.c.id == session_id))
    freed = _release(session, current.slot_id)
    return DeletedSession(
        session_id=current.id,
        employee_id=current.employee_id,
        start_time=current.start_time,
        session=current,
        slots=freed,
    )


def undo_delete_session(session: Session, snapshot: SessionRead) -> SessionChange:
    """Re-create a cancelled session with its original id and creation time."""
    if fetch_session(session, snapshot.id) is not None:
        raise SchedulingError("Session already exists.")
    booked = _book(session, snapshot.slot_id)
    restored = _insert_session(
        session,
        booked,
        id=snapshot.id,
        customer_id=snapshot.customer_id,
        message=snapshot.message,
        created_at=snapshot.created_at,
    )
    return SessionChange(session=restored, slots=[booked])
