"""HTTP client for the calendar API.

Every request body is validated with the server's own schemas before it is
sent, every response is validated into a typed ``Envelope``, and successful
mutations patch the week caches and push an undo entry.
"""
import logging
from datetime import date
from uuid import UUID

import httpx

from client.undo_ledger import ActionKind, UndoEntry, UndoLedger
from client.week_cache import WeekCache
from schemas import (
    AddSessionRequest,
    AddSlotsRequest,
    CamelModel,
    DayRequest,
    DeletedSession,
    DeletedSlots,
    DeleteSlotsRequest,
    DuplicateDayRequest,
    Envelope,
    NormalizedRecurringDates,
    NormalizedSessions,
    NormalizedSlots,
    RecurringDay,
    RecurringDayRequest,
    SeriesRequest,
    SessionChange,
    SessionRead,
    SessionRequest,
    SessionUpdate,
    SlotHourRequest,
    SlotHourUpdate,
    SlotMinutesRequest,
    SlotMinutesUpdate,
    SlotRead,
    SlotRequest,
    SlotSeries,
    UndoDeleteSessionRequest,
    UpdateSessionRequest,
    WeekRequest,
)

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """The server failed to process a request (5xx)."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def _series_payload(series: SlotSeries) -> dict:
    """Undo payload naming the rows a series write inserted and the ones it adopted."""
    adopted = {slot.id for slot in series.adopted_slots}
    return {
        "slot_id": series.slot.id,
        "slot_ids": [slot.id for slot in series.slots if slot.id not in adopted],
        "adopted_slots": series.adopted_slots,
    }


class SchedulingClient:
    def __init__(
        self,
        http: httpx.Client,
        slots: WeekCache | None = None,
        sessions: WeekCache | None = None,
        recurring_dates: WeekCache | None = None,
        ledger: UndoLedger | None = None,
    ):
        self.http = http
        self.slots = slots if slots is not None else WeekCache()
        self.sessions = sessions if sessions is not None else WeekCache()
        self.recurring_dates = recurring_dates if recurring_dates is not None else WeekCache(lambda row: row.date)
        self.ledger = ledger if ledger is not None else UndoLedger()
        self._inverses = {
            ActionKind.ADD_RECURRING_SLOT: lambda slot_id, slot_ids, adopted_slots: self.undo_add_recurring_slot(
                slot_id, slot_ids, adopted_slots
            ),
            ActionKind.UPDATE_SLOT_HOUR: lambda slot_id, hour, slot_ids: self.update_slot_hour(
                slot_id, hour, slot_ids, record=False
            ),
            ActionKind.UPDATE_RECURRING_SLOT_HOUR: lambda slot_id, hour, slot_ids: self.update_recurring_slot_hour(
                slot_id, hour, slot_ids, record=False
            ),
            ActionKind.UPDATE_SLOT_MINUTES: lambda slot_id, minutes, slot_ids: self.update_slot_minutes(
                slot_id, minutes, slot_ids, record=False
            ),
            ActionKind.UPDATE_RECURRING_SLOT_MINUTES: lambda slot_id, minutes, slot_ids: (
                self.update_recurring_slot_minutes(slot_id, minutes, slot_ids, record=False)
            ),
            ActionKind.DELETE_SLOTS: lambda slots: self.add_slots(slots),
            ActionKind.DUPLICATE_DAY: lambda employee_id, slot_ids: self.delete_slots(
                employee_id, slot_ids, record=False
            ),
            ActionKind.SET_SLOT_RECURRENCE: lambda slot_id, slot_ids, adopted_slots: self.disable_slot_recurrence(
                slot_id, slot_ids, adopted_slots, record=False
            ),
            ActionKind.DISABLE_SLOT_RECURRENCE: lambda slot_id: self.set_slot_recurrence(slot_id, record=False),
            ActionKind.SET_RECURRING_DAY: lambda employee_id, day, slot_ids, dates: self.disable_recurring_day(
                employee_id, day, slot_ids, dates, record=False
            ),
            ActionKind.DISABLE_RECURRING_DAY: lambda employee_id, day: self.set_recurring_day(
                employee_id, day, record=False
            ),
            ActionKind.ADD_SESSION: lambda session_id: self.delete_session(session_id, record=False),
            ActionKind.UPDATE_SESSION: lambda session_id, slot_id: self.update_session(
                session_id, slot_id, record=False
            ),
            ActionKind.DELETE_SESSION: lambda session: self.undo_delete_session(session),
        }

    @classmethod
    def connect(cls, base_url: str, timeout: float = 10.0) -> "SchedulingClient":
        return cls(httpx.Client(base_url=base_url, timeout=timeout))

    def close(self) -> None:
        self.ledger.clear()
        self.slots.clear()
        self.sessions.clear()
        self.recurring_dates.clear()
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _call(self, method: str, path: str, body: CamelModel, result_type) -> Envelope:
        response = self.http.request(method, path, json=body.to_json())
        if response.status_code >= 500:
            raise ApiError(response.status_code, response.json().get("error", response.text))
        if response.status_code not in (200, 409, 422):
            response.raise_for_status()
        envelope = Envelope[result_type].model_validate(response.json())
        if envelope.data is None:
            logger.warning(f"{path}: {envelope.message}")
        return envelope

    def _record(self, record: bool, kind: ActionKind, message: str, payload: dict) -> None:
        if record:
            self.ledger.push(kind, message, payload)

    def undo(self, entry_id: UUID | None = None) -> Envelope | None:
        """Run the inverse of a live ledger entry; None if nothing is left to undo."""
        entry: UndoEntry | None = self.ledger.claim(entry_id)
        if entry is None:
            return None
        logger.info(f"Undoing {entry.kind.value}")
        return self._inverses[entry.kind](**entry.payload)

    # --- Week windows ---

    def get_week_slots(self, employee_id: UUID, start: date, end: date) -> Envelope:
        result = self._call(
            "POST",
            "/slots/get-week-slots",
            WeekRequest(employee_id=employee_id, start=start, end=end),
            NormalizedSlots,
        )
        if result.data is not None:
            self.slots.put(employee_id, start, end, result.data)
        return result

    def get_week_sessions(self, employee_id: UUID, start: date, end: date) -> Envelope:
        result = self._call(
            "POST",
            "/sessions/get-week-sessions",
            WeekRequest(employee_id=employee_id, start=start, end=end),
            NormalizedSessions,
        )
        if result.data is not None:
            self.sessions.put(employee_id, start, end, result.data)
        return result

    def get_week_recurring_dates(self, employee_id: UUID, start: date, end: date) -> Envelope:
        result = self._call(
            "POST",
            "/slots-recurring-dates/get-week-slots-recurring-dates",
            WeekRequest(employee_id=employee_id, start=start, end=end),
            NormalizedRecurringDates,
        )
        if result.data is not None:
            self.recurring_dates.put(employee_id, start, end, result.data)
        return result

    def get_slots_for_rescheduling_session(self, employee_id: UUID, day: date) -> Envelope:
        return self._call(
            "POST",
            "/slots/get-slots-for-rescheduling-session",
            DayRequest(employee_id=employee_id, day=day),
            NormalizedSlots,
        )

    # --- Slots ---

    def add_slot(self, employee_id: UUID, day: date) -> Envelope:
        result = self._call("POST", "/slots/add-slot", DayRequest(employee_id=employee_id, day=day), SlotSeries)
        if result.data is not None:
            self.slots.patch("create", result.data.slots)
        return result

    def add_recurring_slot(self, employee_id: UUID, day: date, record: bool = True) -> Envelope:
        result = self._call(
            "POST", "/slots/add-recurring-slot", DayRequest(employee_id=employee_id, day=day), SlotSeries
        )
        if result.data is not None:
            self.slots.patch("create", result.data.slots)
            self._record(record, ActionKind.ADD_RECURRING_SLOT, result.message, _series_payload(result.data))
        return result

    def add_slots(self, slots: list[SlotRead]) -> Envelope:
        result = self._call("POST", "/slots/add-slots", AddSlotsRequest(slots=slots), list[SlotRead])
        if result.data is not None:
            self.slots.patch("create", result.data)
        return result

    def undo_add_recurring_slot(
        self, slot_id: UUID, slot_ids: list[UUID] | None = None, adopted_slots: list[SlotRead] | None = None
    ) -> Envelope:
        result = self._call(
            "POST",
            "/slots/undo-add-recurring-slot",
            SeriesRequest(slot_id=slot_id, slot_ids=slot_ids, adopted_slots=adopted_slots),
            SlotSeries,
        )
        if result.data is not None:
            self.slots.patch("delete", result.data.slots)
            self.slots.patch("update", result.data.restored_slots)
        return result

    def _update_time(self, path: str, body: CamelModel, result_type, kind: ActionKind, prev_field: str, record: bool):
        result = self._call("PUT", path, body, result_type)
        if result.data is not None:
            self.slots.patch("update", result.data.slots)
            prev = getattr(result.data, f"prev_{prev_field}")
            self._record(
                record,
                kind,
                result.message,
                {"slot_id": result.data.slot.id, prev_field: prev, "slot_ids": [slot.id for slot in result.data.slots]},
            )
        return result

    def update_slot_hour(
        self, slot_id: UUID, hour: int, slot_ids: list[UUID] | None = None, record: bool = True
    ) -> Envelope:
        return self._update_time(
            "/slots/update-slot-hour",
            SlotHourRequest(slot_id=slot_id, hour=hour, slot_ids=slot_ids),
            SlotHourUpdate,
            ActionKind.UPDATE_SLOT_HOUR,
            "hour",
            record,
        )

    def update_recurring_slot_hour(
        self, slot_id: UUID, hour: int, slot_ids: list[UUID] | None = None, record: bool = True
    ) -> Envelope:
        return self._update_time(
            "/slots/update-recurring-slot-hour",
            SlotHourRequest(slot_id=slot_id, hour=hour, slot_ids=slot_ids),
            SlotHourUpdate,
            ActionKind.UPDATE_RECURRING_SLOT_HOUR,
            "hour",
            record,
        )

    def update_slot_minutes(
        self, slot_id: UUID, minutes: int, slot_ids: list[UUID] | None = None, record: bool = True
    ) -> Envelope:
        return self._update_time(
            "/slots/update-slot-minutes",
            SlotMinutesRequest(slot_id=slot_id, minutes=minutes, slot_ids=slot_ids),
            SlotMinutesUpdate,
            ActionKind.UPDATE_SLOT_MINUTES,
            "minutes",
            record,
        )

    def update_recurring_slot_minutes(
        self, slot_id: UUID, minutes: int, slot_ids: list[UUID] | None = None, record: bool = True
    ) -> Envelope:
        return self._update_time(
            "/slots/update-recurring-slot-minutes",
            SlotMinutesRequest(slot_id=slot_id, minutes=minutes, slot_ids=slot_ids),
            SlotMinutesUpdate,
            ActionKind.UPDATE_RECURRING_SLOT_MINUTES,
            "minutes",
            record,
        )

    def delete_slots(self, employee_id: UUID, slot_ids: list[UUID], record: bool = True) -> Envelope:
        result = self._call(
            "DELETE",
            "/slots/delete-slots",
            DeleteSlotsRequest(employee_id=employee_id, slot_ids=slot_ids),
            DeletedSlots,
        )
        if result.data is not None:
            self.slots.patch("delete", result.data.slots)
            self._record(record, ActionKind.DELETE_SLOTS, result.message, {"slots": result.data.slots})
        return result

    def duplicate_day(self, employee_id: UUID, day: date, selected_days: list[date], record: bool = True) -> Envelope:
        result = self._call(
            "POST",
            "/slots/duplicate-day",
            DuplicateDayRequest(employee_id=employee_id, day=day, selected_days=selected_days),
            list[SlotRead],
        )
        if result.data is not None:
            self.slots.patch("create", result.data)
            self._record(
                record,
                ActionKind.DUPLICATE_DAY,
                result.message,
                {"employee_id": employee_id, "slot_ids": [slot.id for slot in result.data]},
            )
        return result

    def set_slot_recurrence(self, slot_id: UUID, record: bool = True) -> Envelope:
        result = self._call("POST", "/slots/set-slot-recurrence", SlotRequest(slot_id=slot_id), SlotSeries)
        if result.data is not None:
            self.slots.patch("update", result.data.slots)
            self._record(record, ActionKind.SET_SLOT_RECURRENCE, result.message, _series_payload(result.data))
        return result

    def disable_slot_recurrence(
        self,
        slot_id: UUID,
        slot_ids: list[UUID] | None = None,
        adopted_slots: list[SlotRead] | None = None,
        record: bool = True,
    ) -> Envelope:
        result = self._call(
            "POST",
            "/slots/disable-slot-recurrence",
            SeriesRequest(slot_id=slot_id, slot_ids=slot_ids, adopted_slots=adopted_slots),
            SlotSeries,
        )
        if result.data is not None:
            self.slots.patch("update", [result.data.slot, *result.data.restored_slots])
            self.slots.patch("delete", result.data.slots)
            self._record(record, ActionKind.DISABLE_SLOT_RECURRENCE, result.message, {"slot_id": slot_id})
        return result

    def set_recurring_day(self, employee_id: UUID, day: date, record: bool = True) -> Envelope:
        result = self._call(
            "POST", "/slots/set-recurring-day", DayRequest(employee_id=employee_id, day=day), RecurringDay
        )
        if result.data is not None:
            self.recurring_dates.patch("create", result.data.recurring_dates)
            self.slots.patch("create", result.data.slots)
            self._record(
                record,
                ActionKind.SET_RECURRING_DAY,
                result.message,
                {
                    "employee_id": employee_id,
                    "day": day,
                    "slot_ids": [slot.id for slot in result.data.slots],
                    "dates": [marker.date for marker in result.data.recurring_dates],
                },
            )
        return result

    def disable_recurring_day(
        self,
        employee_id: UUID,
        day: date,
        slot_ids: list[UUID] | None = None,
        dates: list[date] | None = None,
        record: bool = True,
    ) -> Envelope:
        result = self._call(
            "POST",
            "/slots/disable-recurring-day",
            RecurringDayRequest(employee_id=employee_id, day=day, slot_ids=slot_ids, dates=dates),
            RecurringDay,
        )
        if result.data is not None:
            self.recurring_dates.patch("delete", result.data.recurring_dates)
            self.slots.patch("delete", result.data.slots)
            self._record(
                record, ActionKind.DISABLE_RECURRING_DAY, result.message, {"employee_id": employee_id, "day": day}
            )
        return result

    # --- Sessions ---

    def add_session(self, slot_id: UUID, customer_id: UUID, message: str | None = None, record: bool = True) -> Envelope:
        result = self._call(
            "POST",
            "/sessions/add-session",
            AddSessionRequest(slot_id=slot_id, customer_id=customer_id, message=message),
            SessionChange,
        )
        if result.data is not None:
            self.sessions.patch("create", [result.data.session])
            self.slots.patch("update", result.data.slots)
            self._record(record, ActionKind.ADD_SESSION, result.message, {"session_id": result.data.session.id})
        return result

    def update_session(self, session_id: UUID, slot_id: UUID, record: bool = True) -> Envelope:
        """Reschedule; a session that changed weeks leaves its old cached week."""
        result = self._call(
            "PUT",
            "/sessions/update-session",
            UpdateSessionRequest(session_id=session_id, slot_id=slot_id),
            SessionUpdate,
        )
        if result.data is not None:
            self.sessions.patch("update", [result.data.session])
            self.slots.patch("update", result.data.slots)
            self._record(
                record,
                ActionKind.UPDATE_SESSION,
                result.message,
                {"session_id": session_id, "slot_id": result.data.prev_slot_id},
            )
        return result

    def delete_session(self, session_id: UUID, record: bool = True) -> Envelope:
        result = self._call(
            "DELETE", "/sessions/delete-session", SessionRequest(session_id=session_id), DeletedSession
        )
        if result.data is not None:
            self.sessions.remove(result.data.session_id)
            self.slots.patch("update", result.data.slots)
            self._record(record, ActionKind.DELETE_SESSION, result.message, {"session": result.data.session})
        return result

    def undo_delete_session(self, session: SessionRead) -> Envelope:
        result = self._call(
            "POST", "/sessions/undo-delete-session", UndoDeleteSessionRequest(session=session), SessionChange
        )
        if result.data is not None:
            self.sessions.patch("create", [result.data.session])
            self.slots.patch("update", result.data.slots)
        return result
