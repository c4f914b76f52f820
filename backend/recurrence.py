"""Recurrence Engine.

Weekly series run from a seed date through 31 December of the seed's year.
Two recurrence mechanisms share this module:

* slot recurrence: one slot's time of day projected onto every later
  occurrence of its weekday (``recurring`` flag on each slot);
* day recurrence: a ``slots_recurring_dates`` marker per occurrence, meaning
  every slot on the seed day is copied forward.

Day recurrence is authoritative over the slots on a marked day: every change made
there is repeated on the later marked dates of its series, skipping dates where
the target time is taken.

All functions run inside the caller's transaction and raise ``SchedulingError``
for domain failures; nothing here commits.
"""
import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime, time, timedelta

from sqlmodel import Session

import slot_store as store
from errors import SchedulingError
from models import SlotType
from schemas import (
    DeletedSlots,
    RecurringDateRead,
    RecurringDay,
    SlotHourUpdate,
    SlotMinutesUpdate,
    SlotRead,
    SlotSeries,
)
from slot_store import ConflictPolicy

logger = logging.getLogger(__name__)

DAY_START = time(8, 0)
DAY_END = time(20, 0)
SEARCH_STEP = timedelta(minutes=15)
WEEK = timedelta(days=7)


def weekly_dates(seed: date, include_seed: bool = True) -> list[date]:
    """Same weekday as ``seed``, every 7 days, through the end of its year."""
    year_end = date(seed.year, 12, 31)
    day = seed if include_seed else seed + WEEK
    dates = []
    while day <= year_end:
        dates.append(day)
        day += WEEK
    return dates


def candidate_instants(day: date) -> list[datetime]:
    """Every 15-minute start between 08:00 and 20:00 inclusive."""
    instant = datetime.combine(day, DAY_START)
    last = datetime.combine(day, DAY_END)
    instants = []
    while instant <= last:
        instants.append(instant)
        instant += SEARCH_STEP
    return instants


def first_free_instant(session: Session, employee_id: uuid.UUID, day: date, now: datetime | None = None) -> datetime:
    now = now or datetime.now()
    taken = {slot.start_time for slot in store.fetch_day_slots(session, employee_id, day)}
    for instant in candidate_instants(day):
        if instant > now and instant not in taken:
            return instant
    raise SchedulingError("No slot available.")


def _require_slot(session: Session, slot_id: uuid.UUID) -> SlotRead:
    slot = store.fetch_slot(session, slot_id)
    if slot is None:
        raise SchedulingError("Slot not found.")
    return slot


def _copy_rows(employee_id: uuid.UUID, source: list[SlotRead], days: list[date]) -> list[dict]:
    """New AVAILABLE rows repeating each source slot's time on ``days``."""
    return [
        store.new_slot_row(
            employee_id,
            datetime.combine(day, slot.start_time.time()),
            duration=slot.duration,
            recurring=slot.recurring,
        )
        for day in days
        for slot in source
    ]


def _later_marked_dates(session: Session, employee_id: uuid.UUID, day: date) -> list[date]:
    """Later same-weekday markers of ``day``; empty when ``day`` itself is not marked."""
    if not store.is_recurring_day(session, employee_id, day):
        return []
    return [
        marker.date
        for marker in store.fetch_recurring_dates(session, employee_id, day + timedelta(days=1), date(day.year, 12, 31))
        if marker.date.weekday() == day.weekday()
    ]


def reconcile_recurring_day(
    session: Session, employee_id: uuid.UUID, day: date, added: list[SlotRead]
) -> list[SlotRead]:
    """Project slots just added to a recurring day onto its later marked dates."""
    later = _later_marked_dates(session, employee_id, day) if added else []
    if not later:
        return []
    projected = store.insert_slots(session, _copy_rows(employee_id, added, later), ConflictPolicy.SKIP)
    if projected:
        logger.info(f"Projected {len(projected)} slots from recurring day {day}")
    return projected


def _follow_deletes(session: Session, employee_id: uuid.UUID, removed: list[SlotRead]) -> list[SlotRead]:
    """Delete the later marked copies of slots just removed from recurring days."""
    times_by_day: dict[date, set[time]] = {}
    for slot in removed:
        times_by_day.setdefault(slot.start_time.date(), set()).add(slot.start_time.time())
    followers = []
    for day, times in sorted(times_by_day.items()):
        instants = [
            datetime.combine(later, t)
            for later in _later_marked_dates(session, employee_id, day)
            for t in sorted(times)
        ]
        followers.extend(store.delete_unbooked_at(session, employee_id, instants))
    return followers


# --- Reads ---


def get_week_slots(
    session: Session, employee_id: uuid.UUID, start: date, end: date, now: datetime | None = None
) -> list[SlotRead]:
    """Slots from ``start`` through ``end`` after purging the employee's past unbooked slots."""
    store.purge_past_slots(session, employee_id, now or datetime.now())
    window_start, _ = store.day_bounds(start)
    _, window_end = store.day_bounds(end)
    return store.fetch_slots_between(session, employee_id, window_start, window_end)


def get_slots_for_rescheduling_session(session: Session, employee_id: uuid.UUID, day: date) -> list[SlotRead]:
    return store.fetch_day_slots(session, employee_id, day, SlotType.AVAILABLE)


def get_week_recurring_dates(
    session: Session, employee_id: uuid.UUID, start: date, end: date
) -> list[RecurringDateRead]:
    return store.fetch_recurring_dates(session, employee_id, start, end)


# --- Single slots ---


def add_slot(session: Session, employee_id: uuid.UUID, day: date, now: datetime | None = None) -> SlotSeries:
    """Insert one AVAILABLE 30-minute slot at the earliest free instant of ``day``."""
    start_time = first_free_instant(session, employee_id, day, now)
    [slot] = store.insert_slots(session, [store.new_slot_row(employee_id, start_time)], ConflictPolicy.FAIL)
    projected = reconcile_recurring_day(session, employee_id, day, [slot])
    return SlotSeries(slot=slot, slots=[slot, *projected])


def add_slots(session: Session, snapshot: list[SlotRead]) -> list[SlotRead]:
    """Restore previously deleted slots with their original ids."""
    if any(slot.type is SlotType.BOOKED for slot in snapshot):
        raise SchedulingError("Booked slots cannot be restored.")
    now = datetime.now()
    rows = [
        {
            "id": slot.id,
            "employee_id": slot.employee_id,
            "type": slot.type,
            "start_time": slot.start_time,
            "duration": slot.duration,
            "recurring": slot.recurring,
            "created_at": slot.created_at,
            "updated_at": now,
        }
        for slot in snapshot
    ]
    return store.insert_slots(session, rows, ConflictPolicy.FAIL)


def delete_slots(session: Session, employee_id: uuid.UUID, slot_ids: list[uuid.UUID]) -> DeletedSlots:
    """Delete ``slot_ids``; on a recurring day the later marked copies go with them."""
    targets = store.fetch_slots_by_ids(session, employee_id, slot_ids)
    if not targets:
        raise SchedulingError("No slots to delete.")
    if any(slot.type is SlotType.BOOKED for slot in targets):
        raise SchedulingError("Booked slots cannot be deleted.")
    removed = store.delete_slots_by_ids(session, employee_id, [slot.id for slot in targets])
    removed = sorted([*removed, *_follow_deletes(session, employee_id, removed)], key=lambda s: s.start_time)
    return DeletedSlots(employee_id=employee_id, slot_ids=[slot.id for slot in removed], slots=removed)


def duplicate_day(
    session: Session, employee_id: uuid.UUID, day: date, selected_days: list[date]
) -> list[SlotRead]:
    """Copy ``day``'s slots onto ``selected_days``, skipping occupied instants."""
    source = store.fetch_day_slots(session, employee_id, day)
    if not source:
        raise SchedulingError("Nothing to duplicate.")
    copies = []
    for target in (d for d in selected_days if d != day):
        inserted = store.insert_slots(session, _copy_rows(employee_id, source, [target]), ConflictPolicy.SKIP)
        copies.extend(inserted)
        copies.extend(reconcile_recurring_day(session, employee_id, target, inserted))
    if not copies:
        raise SchedulingError("Selected days already hold these slots.")
    return copies


# --- Moving slots ---


def _move_slot(session: Session, slot: SlotRead, start_time: datetime) -> SlotRead:
    if start_time == slot.start_time:
        return slot
    if store.fetch_slot_at(session, slot.employee_id, start_time) is not None:
        raise SchedulingError("Slot time is already taken.")
    moved = store.update_slot(session, slot.id, start_time=start_time)
    store.sync_session_start(session, moved)
    return moved


def _move_followers(
    session: Session,
    employee_id: uuid.UUID,
    days: list[date],
    old_time: time,
    new_time: time,
    only: list[uuid.UUID] | None = None,
) -> list[SlotRead]:
    """Move the slot at ``old_time`` to ``new_time`` on each of ``days``.

    A day whose ``new_time`` is already held keeps its slot where it is. When
    ``only`` is given, slots outside it stay put.
    """
    allowed = None if only is None else set(only)
    moved = []
    for day in days:
        slot = store.fetch_slot_at(session, employee_id, datetime.combine(day, old_time))
        if slot is None or (allowed is not None and slot.id not in allowed):
            continue
        new_start = datetime.combine(day, new_time)
        if store.fetch_slot_at(session, employee_id, new_start) is not None:
            logger.info(f"Skipping {day}: {new_time} already taken")
            continue
        updated = store.update_slot(session, slot.id, start_time=new_start)
        store.sync_session_start(session, updated)
        moved.append(updated)
    return moved


def _move_on_day(
    session: Session, slot: SlotRead, start_time: datetime, only: list[uuid.UUID] | None = None
) -> list[SlotRead]:
    """Move one slot; on a recurring day its later marked copies follow."""
    moved = _move_slot(session, slot, start_time)
    if start_time == slot.start_time:
        return [moved]
    later = _later_marked_dates(session, slot.employee_id, slot.start_time.date())
    followers = _move_followers(
        session, slot.employee_id, later, slot.start_time.time(), start_time.time(), only
    )
    return [moved, *followers]


def _move_series(
    session: Session,
    seed: SlotRead,
    retime: Callable[[datetime], datetime],
    only: list[uuid.UUID] | None = None,
) -> list[SlotRead]:
    """Move the seed and every later same-weekday slot at its time, seed first.

    The seed itself must be movable.
    """
    new_start = retime(seed.start_time)
    moved = _move_slot(session, seed, new_start)
    if new_start == seed.start_time:
        return [moved]
    followers = _move_followers(
        session,
        seed.employee_id,
        weekly_dates(seed.start_time.date(), include_seed=False),
        seed.start_time.time(),
        new_start.time(),
        only,
    )
    return [moved, *followers]


def update_slot_hour(
    session: Session, slot_id: uuid.UUID, hour: int, only: list[uuid.UUID] | None = None
) -> SlotHourUpdate:
    slot = _require_slot(session, slot_id)
    moved = _move_on_day(session, slot, slot.start_time.replace(hour=hour), only)
    return SlotHourUpdate(prev_hour=slot.start_time.hour, slot=moved[0], slots=moved)


def update_slot_minutes(
    session: Session, slot_id: uuid.UUID, minutes: int, only: list[uuid.UUID] | None = None
) -> SlotMinutesUpdate:
    slot = _require_slot(session, slot_id)
    moved = _move_on_day(session, slot, slot.start_time.replace(minute=minutes), only)
    return SlotMinutesUpdate(prev_minutes=slot.start_time.minute, slot=moved[0], slots=moved)


def update_recurring_slot_hour(
    session: Session, slot_id: uuid.UUID, hour: int, only: list[uuid.UUID] | None = None
) -> SlotHourUpdate:
    seed = _require_slot(session, slot_id)
    moved = _move_series(session, seed, lambda start: start.replace(hour=hour), only)
    return SlotHourUpdate(prev_hour=seed.start_time.hour, slot=moved[0], slots=moved)


def update_recurring_slot_minutes(
    session: Session, slot_id: uuid.UUID, minutes: int, only: list[uuid.UUID] | None = None
) -> SlotMinutesUpdate:
    seed = _require_slot(session, slot_id)
    moved = _move_series(session, seed, lambda start: start.replace(minute=minutes), only)
    return SlotMinutesUpdate(prev_minutes=seed.start_time.minute, slot=moved[0], slots=moved)


# --- Slot recurrence ---


def _series_instants(start_time: datetime, include_seed: bool = True) -> list[datetime]:
    return [
        datetime.combine(day, start_time.time())
        for day in weekly_dates(start_time.date(), include_seed=include_seed)
    ]


def _adopt_rows(session: Session, employee_id: uuid.UUID, rows: list[dict]) -> tuple[list[SlotRead], list[SlotRead]]:
    """Insert series rows under ADOPT.

    Returns the written rows and, for the ones that already existed, their
    state before adoption.
    """
    existing = {
        slot.start_time: slot
        for slot in store.fetch_slots_at(session, employee_id, [row["start_time"] for row in rows])
    }
    written = store.insert_slots(session, rows, ConflictPolicy.ADOPT)
    adopted = [existing[slot.start_time] for slot in written if slot.start_time in existing]
    if adopted:
        logger.info(f"Adopted {len(adopted)} existing slots into a series")
    return written, adopted


def _revert_series(
    session: Session, employee_id: uuid.UUID, slot_ids: list[uuid.UUID], adopted: list[SlotRead]
) -> tuple[list[SlotRead], list[SlotRead]]:
    """Drop the rows a series write inserted and put adopted rows back as they were."""
    removed = store.delete_slots_by_ids(session, employee_id, slot_ids, keep_booked=True)
    restored = []
    for snapshot in adopted:
        if snapshot.employee_id != employee_id:
            continue
        row = store.update_slot(session, snapshot.id, recurring=snapshot.recurring)
        if row is not None:
            restored.append(row)
    return removed, restored


def add_recurring_slot(
    session: Session, employee_id: uuid.UUID, day: date, now: datetime | None = None
) -> SlotSeries:
    """Seed a weekly series at the earliest free instant of ``day``.

    Occupied instants later in the series are adopted, not duplicated.
    """
    start_time = first_free_instant(session, employee_id, day, now)
    rows = [
        store.new_slot_row(employee_id, instant, recurring=True)
        for instant in _series_instants(start_time)
    ]
    written, adopted = _adopt_rows(session, employee_id, rows)
    return SlotSeries(slot=written[0], slots=written, adopted_slots=adopted)


def set_slot_recurrence(session: Session, slot_id: uuid.UUID) -> SlotSeries:
    before = _require_slot(session, slot_id)
    seed = store.update_slot(session, before.id, recurring=True)
    rows = [
        store.new_slot_row(seed.employee_id, instant, duration=seed.duration, recurring=True)
        for instant in _series_instants(seed.start_time, include_seed=False)
    ]
    projected, adopted = _adopt_rows(session, seed.employee_id, rows)
    return SlotSeries(slot=seed, slots=[seed, *projected], adopted_slots=[before, *adopted])


def disable_slot_recurrence(
    session: Session,
    slot_id: uuid.UUID,
    slot_ids: list[uuid.UUID] | None = None,
    adopted_slots: list[SlotRead] | None = None,
) -> SlotSeries:
    """Keep the seed as a one-off slot and retire its later occurrences.

    With ``slot_ids`` only those rows are retired, and ``adopted_slots`` get
    their earlier ``recurring`` flag back, the seed included.
    """
    seed = _require_slot(session, slot_id)
    seed = store.update_slot(session, seed.id, recurring=False)
    if slot_ids is None:
        retired = store.delete_unbooked_at(
            session, seed.employee_id, _series_instants(seed.start_time, include_seed=False)
        )
        return SlotSeries(slot=seed, slots=retired)
    retired, restored = _revert_series(
        session, seed.employee_id, [i for i in slot_ids if i != seed.id], adopted_slots or []
    )
    seed = next((row for row in restored if row.id == seed.id), seed)
    return SlotSeries(slot=seed, slots=retired, restored_slots=restored)


def undo_add_recurring_slot(
    session: Session,
    slot_id: uuid.UUID,
    slot_ids: list[uuid.UUID] | None = None,
    adopted_slots: list[SlotRead] | None = None,
) -> SlotSeries:
    """Remove the whole series, seed included.

    With ``slot_ids`` only the rows the series inserted are removed, and the
    slots it adopted get their earlier ``recurring`` flag back.
    """
    seed = _require_slot(session, slot_id)
    if slot_ids is None:
        removed = store.delete_unbooked_at(session, seed.employee_id, _series_instants(seed.start_time))
        return SlotSeries(slot=seed, slots=removed)
    removed, restored = _revert_series(session, seed.employee_id, slot_ids, adopted_slots or [])
    return SlotSeries(slot=seed, slots=removed, restored_slots=restored)


# --- Day recurrence ---


def set_recurring_day(session: Session, employee_id: uuid.UUID, day: date) -> RecurringDay:
    """Mark ``day`` and its later weekly occurrences, copying the day's slots onto them."""
    dates = weekly_dates(day)
    markers = store.insert_recurring_dates(session, employee_id, dates)
    if not markers:
        raise SchedulingError("Day is already recurring.")
    source = store.fetch_day_slots(session, employee_id, day)
    copies = store.insert_slots(session, _copy_rows(employee_id, source, dates[1:]), ConflictPolicy.SKIP)
    return RecurringDay(recurring_date=markers[0], recurring_dates=markers, slots=copies)


def disable_recurring_day(
    session: Session,
    employee_id: uuid.UUID,
    day: date,
    slot_ids: list[uuid.UUID] | None = None,
    dates: list[date] | None = None,
) -> RecurringDay:
    """Drop the markers from ``day`` onward and the later copies of the day's slot times.

    ``dates`` narrows the markers removed and ``slot_ids`` names the copies to
    remove, which is how a set-recurring-day is taken back exactly.
    """
    series = weekly_dates(day)
    if dates is not None:
        wanted = set(dates)
        series = [d for d in series if d in wanted]
    markers = store.delete_recurring_dates(session, employee_id, series)
    if not markers:
        raise SchedulingError("Day is not recurring.")
    if slot_ids is not None:
        removed = store.delete_slots_by_ids(session, employee_id, slot_ids, keep_booked=True)
    else:
        times = sorted({slot.start_time.time() for slot in store.fetch_day_slots(session, employee_id, day)})
        instants = [datetime.combine(d, t) for d in series if d != day for t in times]
        removed = store.delete_unbooked_at(session, employee_id, instants)
    return RecurringDay(recurring_date=markers[0], recurring_dates=markers, slots=removed)
