from datetime import date, timedelta

import pytest
from conftest import at, day_slots

import recurrence
from errors import SchedulingError
from models import SlotType
from seed import seed_database
from verify_calendar import check_calendar


def test_weekly_dates_run_through_year_end():
    dates = recurrence.weekly_dates(date(2030, 12, 2))
    assert dates == [date(2030, 12, 2), date(2030, 12, 9), date(2030, 12, 16), date(2030, 12, 23), date(2030, 12, 30)]

    assert recurrence.weekly_dates(date(2030, 12, 30), include_seed=False) == []
    assert recurrence.weekly_dates(date(2030, 12, 31)) == [date(2030, 12, 31)]


def test_candidate_instants_cover_business_hours():
    instants = recurrence.candidate_instants(date(2030, 5, 6))
    assert len(instants) == 49
    assert instants[0] == at(date(2030, 5, 6), 8)
    assert instants[1] == at(date(2030, 5, 6), 8, 15)
    assert instants[-1] == at(date(2030, 5, 6), 20)


def test_first_free_instant_skips_the_past(test_session, employee_id, monday, make_slot):
    make_slot(employee_id, at(monday, 10, 15))

    found = recurrence.first_free_instant(test_session, employee_id, monday, now=at(monday, 10, 5))

    assert found == at(monday, 10, 30)


def test_first_free_instant_late_in_the_day(test_session, employee_id, monday):
    with pytest.raises(SchedulingError, match="No slot available."):
        recurrence.first_free_instant(test_session, employee_id, monday, now=at(monday, 20))


def test_get_week_slots_purges_past_unbooked(test_session, employee_id, monday, make_slot):
    make_slot(employee_id, at(monday, 9))
    booked = make_slot(employee_id, at(monday, 10), slot_type=SlotType.BOOKED)
    future = make_slot(employee_id, at(monday, 15))

    rows = recurrence.get_week_slots(
        test_session, employee_id, monday, monday + timedelta(days=6), now=at(monday, 12)
    )

    assert [row.id for row in rows] == [booked.id, future.id]
    assert len(day_slots(test_session, employee_id, monday)) == 2


def test_reconcile_ignores_plain_days(test_session, employee_id, monday, make_slot):
    slot = make_slot(employee_id, at(monday, 9))
    assert recurrence.reconcile_recurring_day(test_session, employee_id, monday, [slot]) == []


def test_seeded_calendar_passes_checks(test_session, employee_id):
    seed_database(employee_id, today=date(date.today().year + 1, 3, 4))

    problems = check_calendar(test_session)

    assert all(rows == [] for rows in problems.values())
    next_monday = date(date.today().year + 1, 3, 4)
    next_monday += timedelta(days=7 - next_monday.weekday())
    slots = day_slots(test_session, employee_id, next_monday)
    assert [(s.start_time.hour, s.start_time.minute, s.duration) for s in slots] == [
        (9, 0, 60),
        (10, 30, 30),
        (14, 0, 45),
    ]
    assert slots[0].type is SlotType.BOOKED


def test_check_calendar_reports_booked_slot_without_session(test_session, employee_id, monday, make_slot):
    orphan = make_slot(employee_id, at(monday, 9), slot_type=SlotType.BOOKED)

    problems = check_calendar(test_session)

    assert len(problems["booked_without_session"]) == 1
    assert problems["booked_without_session"][0][0] in (str(orphan.id), orphan.id.hex)
    assert problems["duplicate_slots"] == []
