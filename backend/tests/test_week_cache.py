import uuid
from datetime import date, datetime, timedelta

import pytest

from client.week_cache import WeekCache, week_window
from schemas import NormalizedSlots, SlotRead

EMPLOYEE = uuid.uuid4()
MONDAY = date(2031, 3, 3)


def make_row(start_time, employee_id=EMPLOYEE, row_id=None, duration=30):
    now = datetime(2031, 1, 1)
    return SlotRead(
        id=row_id or uuid.uuid4(),
        employee_id=employee_id,
        type="AVAILABLE",
        start_time=start_time,
        duration=duration,
        recurring=False,
        created_at=now,
        updated_at=now,
    )


def cached_week(cache, monday=MONDAY, rows=()):
    cache.put(EMPLOYEE, monday, monday + timedelta(days=6), NormalizedSlots.from_rows(list(rows)))
    return (EMPLOYEE, monday, monday + timedelta(days=6))


def test_week_window():
    assert week_window(date(2031, 3, 6)) == (MONDAY, date(2031, 3, 9))
    assert week_window(datetime(2031, 3, 9, 23, 30)) == (MONDAY, date(2031, 3, 9))
    assert week_window(MONDAY) == (MONDAY, date(2031, 3, 9))


def test_create_lands_in_fetched_window_only():
    cache = WeekCache()
    key = cached_week(cache)
    inside = make_row(datetime(2031, 3, 4, 9))
    outside = make_row(datetime(2031, 3, 11, 9))

    assert cache.patch("create", [inside, outside]) is True
    assert cache.rows(*key) == [inside]
    assert cache.keys() == [key]


def test_create_is_idempotent():
    cache = WeekCache()
    key = cached_week(cache)
    row = make_row(datetime(2031, 3, 4, 9))

    cache.patch("create", [row])
    cache.patch("create", [row])

    assert cache.get(*key)["all_ids"] == [row.id]


def test_update_replaces_row():
    cache = WeekCache()
    original = make_row(datetime(2031, 3, 4, 9))
    key = cached_week(cache, rows=[original])
    moved = make_row(datetime(2031, 3, 4, 14), row_id=original.id, duration=60)

    cache.patch("update", [moved])

    assert cache.rows(*key) == [moved]


def test_update_moving_weeks_leaves_old_window():
    cache = WeekCache()
    original = make_row(datetime(2031, 3, 4, 9))
    first = cached_week(cache, rows=[original])
    second = cached_week(cache, monday=MONDAY + timedelta(days=7))
    moved = make_row(datetime(2031, 3, 12, 9), row_id=original.id)

    assert cache.patch("update", [moved]) is True

    assert cache.rows(*first) == []
    assert cache.rows(*second) == [moved]


def test_update_moving_to_unfetched_week_still_evicts():
    cache = WeekCache()
    original = make_row(datetime(2031, 3, 4, 9))
    key = cached_week(cache, rows=[original])

    cache.patch("update", [make_row(datetime(2031, 4, 1, 9), row_id=original.id)])

    assert cache.rows(*key) == []


def test_delete_removes_everywhere():
    cache = WeekCache()
    row = make_row(datetime(2031, 3, 4, 9))
    key = cached_week(cache, rows=[row])

    assert cache.patch("delete", [row]) is True
    assert cache.patch("delete", [row]) is False
    assert cache.rows(*key) == []


def test_other_employee_is_ignored():
    cache = WeekCache()
    key = cached_week(cache)

    changed = cache.patch("create", [make_row(datetime(2031, 3, 4, 9), employee_id=uuid.uuid4())])

    assert changed is False
    assert cache.rows(*key) == []


def test_unknown_action():
    with pytest.raises(ValueError, match="Unknown patch action"):
        WeekCache().patch("upsert", [make_row(datetime(2031, 3, 4, 9))])


def test_clear():
    cache = WeekCache()
    cached_week(cache)
    cache.clear()
    assert cache.keys() == []
