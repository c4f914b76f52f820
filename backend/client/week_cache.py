"""Client Query Cache: fetched week windows, patched in place after mutations."""
import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from uuid import UUID

from schemas import Normalized

logger = logging.getLogger(__name__)

WindowKey = tuple[UUID, date, date]


def week_window(day: date | datetime) -> tuple[date, date]:
    """Monday and Sunday of the week containing ``day``."""
    if isinstance(day, datetime):
        day = day.date()
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


class WeekCache:
    """``{byId, allIds}`` per ``(employeeId, start, end)`` for one resource.

    Only windows that were fetched (``put``) are ever patched; rows falling in
    any other week are ignored and will be correct on first fetch.
    """

    def __init__(self, day_of: Callable = lambda row: row.start_time):
        self._windows: dict[WindowKey, dict] = {}
        self._day_of = day_of

    def put(self, employee_id: UUID, start: date, end: date, normalized: Normalized) -> None:
        self._windows[(employee_id, start, end)] = {
            "by_id": dict(normalized.by_id),
            "all_ids": list(normalized.all_ids),
        }

    def get(self, employee_id: UUID, start: date, end: date) -> dict | None:
        return self._windows.get((employee_id, start, end))

    def keys(self) -> list[WindowKey]:
        return list(self._windows)

    def rows(self, employee_id: UUID, start: date, end: date) -> list:
        window = self.get(employee_id, start, end)
        if window is None:
            return []
        return [window["by_id"][row_id] for row_id in window["all_ids"]]

    def window_of(self, row) -> WindowKey | None:
        start, end = week_window(self._day_of(row))
        key = (row.employee_id, start, end)
        return key if key in self._windows else None

    def _upsert(self, row) -> bool:
        key = self.window_of(row)
        # a row that moved weeks must not linger in the week it left
        for other_key, window in self._windows.items():
            if other_key != key and other_key[0] == row.employee_id and row.id in window["by_id"]:
                self._drop(window, row.id)
        if key is None:
            return False
        window = self._windows[key]
        if row.id not in window["by_id"]:
            window["all_ids"].append(row.id)
        window["by_id"][row.id] = row
        return True

    def add(self, row) -> bool:
        return self._upsert(row)

    def replace(self, row) -> bool:
        return self._upsert(row)

    @staticmethod
    def _drop(window: dict, row_id: UUID) -> None:
        del window["by_id"][row_id]
        window["all_ids"].remove(row_id)

    def remove(self, row_id: UUID) -> bool:
        removed = False
        for window in self._windows.values():
            if row_id in window["by_id"]:
                self._drop(window, row_id)
                removed = True
        return removed

    def patch(self, action: str, rows: Iterable) -> bool:
        """Apply a create/update/delete to every row; True if any window changed."""
        changed = False
        for row in rows:
            if action == "create":
                changed |= self.add(row)
            elif action == "update":
                changed |= self.replace(row)
            elif action == "delete":
                changed |= self.remove(row.id)
            else:
                raise ValueError(f"Unknown patch action: {action}")
        return changed

    def clear(self) -> None:
        self._windows.clear()
