import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import bookings
import recurrence
from change_feed import TOPICS, ChangeFeed
from db import CHANGE_FEED_POLL_INTERVAL, CORS_ORIGINS, create_db_and_tables, engine, get_session, transaction
from errors import SchedulingError
from schemas import (
    AddSessionRequest,
    AddSlotsRequest,
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
    SessionChange,
    SeriesRequest,
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
    describe_validation_error,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup and run the change feed pump."""
    create_db_and_tables()

    try:
        from migrations.migrate_001_change_feed_triggers import migrate as migrate_001

        migrate_001(engine)
    except Exception as e:
        # Don't raise - the API works without the feed, but log the error clearly
        logger.error(f"Migration 001 failed: {str(e)}")

    pump = None
    if CHANGE_FEED_POLL_INTERVAL > 0:
        pump = asyncio.create_task(app.state.change_feed.run(CHANGE_FEED_POLL_INTERVAL))

    logger.info("Database initialized")
    yield

    if pump is not None:
        pump.cancel()
        with suppress(asyncio.CancelledError):
            await pump
    logger.info("Application shutting down...")


# Create FastAPI app
app = FastAPI(title="Slot Calendar API", version="1.0.0", lifespan=lifespan)
app.state.change_feed = ChangeFeed()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report the first invalid field as ``{message, data: null}``."""
    errors = exc.errors()
    message = describe_validation_error(errors[0]) if errors else "Invalid request."
    logger.warning(f"Validation error for {request.url.path}: {message}")
    return JSONResponse(status_code=422, content={"message": message, "data": None})


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    return JSONResponse(status_code=200, content={"message": exc.message, "data": None})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    return JSONResponse(status_code=409, content={"message": "Slot time is already taken.", "data": None})


@app.exception_handler(StarletteHTTPException)
async def internal_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return await http_exception_handler(request, exc)


@app.get("/")
def root():
    return {"message": "Slot Calendar API", "docs": "/docs"}


# --- Slots ---


@app.post("/slots/get-week-slots", response_model=Envelope[NormalizedSlots])
def get_week_slots(request: WeekRequest, session: Session = Depends(get_session)):
    """Get one week of slots, dropping the employee's past unbooked slots first."""
    logger.info(f"Week slots request for {request.employee_id}: {request.start} to {request.end}")
    with transaction(session, "get week slots"):
        rows = recurrence.get_week_slots(session, request.employee_id, request.start, request.end)
    return Envelope[NormalizedSlots](message="Slots have been fetched.", data=NormalizedSlots.from_rows(rows))


@app.post("/slots/get-slots-for-rescheduling-session", response_model=Envelope[NormalizedSlots])
def get_slots_for_rescheduling_session(request: DayRequest, session: Session = Depends(get_session)):
    """AVAILABLE slots of one day, the targets a session can move to."""
    with transaction(session, "get slots for rescheduling"):
        rows = recurrence.get_slots_for_rescheduling_session(session, request.employee_id, request.day)
    return Envelope[NormalizedSlots](message="Slots have been fetched.", data=NormalizedSlots.from_rows(rows))


@app.post("/slots/add-slot", response_model=Envelope[SlotSeries])
def add_slot(request: DayRequest, session: Session = Depends(get_session)):
    logger.info(f"Add slot request for {request.employee_id} on {request.day}")
    with transaction(session, "add slot"):
        result = recurrence.add_slot(session, request.employee_id, request.day)
    return Envelope[SlotSeries](message="New slot has been added.", data=result)


@app.post("/slots/add-recurring-slot", response_model=Envelope[SlotSeries])
def add_recurring_slot(request: DayRequest, session: Session = Depends(get_session)):
    logger.info(f"Add recurring slot request for {request.employee_id} on {request.day}")
    with transaction(session, "add recurring slot"):
        result = recurrence.add_recurring_slot(session, request.employee_id, request.day)
    logger.info(f"Recurring slot {result.slot.id} covers {len(result.slots)} dates")
    return Envelope[SlotSeries](message="New recurring slots have been added.", data=result)


@app.post("/slots/add-slots", response_model=Envelope[list[SlotRead]])
def add_slots(request: AddSlotsRequest, session: Session = Depends(get_session)):
    """Restore deleted slots, keeping their ids."""
    logger.info(f"Restoring {len(request.slots)} slots")
    with transaction(session, "add slots"):
        result = recurrence.add_slots(session, request.slots)
    return Envelope[list[SlotRead]](message="Slots have been restored.", data=result)


@app.put("/slots/update-slot-hour", response_model=Envelope[SlotHourUpdate])
def update_slot_hour(request: SlotHourRequest, session: Session = Depends(get_session)):
    logger.info(f"Update hour of slot {request.slot_id} to {request.hour}")
    with transaction(session, "update slot hour"):
        result = recurrence.update_slot_hour(session, request.slot_id, request.hour, request.slot_ids)
    return Envelope[SlotHourUpdate](message="Slot hour has been updated.", data=result)


@app.put("/slots/update-recurring-slot-hour", response_model=Envelope[SlotHourUpdate])
def update_recurring_slot_hour(request: SlotHourRequest, session: Session = Depends(get_session)):
    logger.info(f"Update hour of recurring slot {request.slot_id} to {request.hour}")
    with transaction(session, "update recurring slot hour"):
        result = recurrence.update_recurring_slot_hour(session, request.slot_id, request.hour, request.slot_ids)
    return Envelope[SlotHourUpdate](message="Recurring slot hour has been updated.", data=result)


@app.put("/slots/update-slot-minutes", response_model=Envelope[SlotMinutesUpdate])
def update_slot_minutes(request: SlotMinutesRequest, session: Session = Depends(get_session)):
    logger.info(f"Update minutes of slot {request.slot_id} to {request.minutes}")
    with transaction(session, "update slot minutes"):
        result = recurrence.update_slot_minutes(session, request.slot_id, request.minutes, request.slot_ids)
    return Envelope[SlotMinutesUpdate](message="Slot minutes have been updated.", data=result)


@app.put("/slots/update-recurring-slot-minutes", response_model=Envelope[SlotMinutesUpdate])
def update_recurring_slot_minutes(request: SlotMinutesRequest, session: Session = Depends(get_session)):
    logger.info(f"Update minutes of recurring slot {request.slot_id} to {request.minutes}")
    with transaction(session, "update recurring slot minutes"):
        result = recurrence.update_recurring_slot_minutes(session, request.slot_id, request.minutes, request.slot_ids)
    return Envelope[SlotMinutesUpdate](message="Recurring slot minutes have been updated.", data=result)


@app.delete("/slots/delete-slots", response_model=Envelope[DeletedSlots])
def delete_slots(request: DeleteSlotsRequest, session: Session = Depends(get_session)):
    logger.info(f"Delete {len(request.slot_ids)} slots for {request.employee_id}")
    with transaction(session, "delete slots"):
        result = recurrence.delete_slots(session, request.employee_id, request.slot_ids)
    return Envelope[DeletedSlots](message="Slots have been deleted.", data=result)


@app.post("/slots/duplicate-day", response_model=Envelope[list[SlotRead]])
def duplicate_day(request: DuplicateDayRequest, session: Session = Depends(get_session)):
    logger.info(f"Duplicate {request.day} onto {len(request.selected_days)} days for {request.employee_id}")
    with transaction(session, "duplicate day"):
        result = recurrence.duplicate_day(session, request.employee_id, request.day, request.selected_days)
    return Envelope[list[SlotRead]](message="Day has been duplicated.", data=result)


@app.post("/slots/set-slot-recurrence", response_model=Envelope[SlotSeries])
def set_slot_recurrence(request: SlotRequest, session: Session = Depends(get_session)):
    logger.info(f"Set recurrence on slot {request.slot_id}")
    with transaction(session, "set slot recurrence"):
        result = recurrence.set_slot_recurrence(session, request.slot_id)
    return Envelope[SlotSeries](message="Slot recurrence has been set.", data=result)


@app.post("/slots/disable-slot-recurrence", response_model=Envelope[SlotSeries])
def disable_slot_recurrence(request: SeriesRequest, session: Session = Depends(get_session)):
    logger.info(f"Disable recurrence on slot {request.slot_id}")
    with transaction(session, "disable slot recurrence"):
        result = recurrence.disable_slot_recurrence(
            session, request.slot_id, request.slot_ids, request.adopted_slots
        )
    return Envelope[SlotSeries](message="Slot recurrence has been disabled.", data=result)


@app.post("/slots/undo-add-recurring-slot", response_model=Envelope[SlotSeries])
def undo_add_recurring_slot(request: SeriesRequest, session: Session = Depends(get_session)):
    logger.info(f"Remove recurring series of slot {request.slot_id}")
    with transaction(session, "undo add recurring slot"):
        result = recurrence.undo_add_recurring_slot(
            session, request.slot_id, request.slot_ids, request.adopted_slots
        )
    return Envelope[SlotSeries](message="Recurring slots have been removed.", data=result)


@app.post("/slots/set-recurring-day", response_model=Envelope[RecurringDay])
def set_recurring_day(request: DayRequest, session: Session = Depends(get_session)):
    logger.info(f"Set recurring day {request.day} for {request.employee_id}")
    with transaction(session, "set recurring day"):
        result = recurrence.set_recurring_day(session, request.employee_id, request.day)
    return Envelope[RecurringDay](message="Recurring day has been set.", data=result)


@app.post("/slots/disable-recurring-day", response_model=Envelope[RecurringDay])
def disable_recurring_day(request: RecurringDayRequest, session: Session = Depends(get_session)):
    logger.info(f"Disable recurring day {request.day} for {request.employee_id}")
    with transaction(session, "disable recurring day"):
        result = recurrence.disable_recurring_day(
            session, request.employee_id, request.day, request.slot_ids, request.dates
        )
    return Envelope[RecurringDay](message="Recurring day has been disabled.", data=result)


@app.post("/slots-recurring-dates/get-week-slots-recurring-dates", response_model=Envelope[NormalizedRecurringDates])
def get_week_slots_recurring_dates(request: WeekRequest, session: Session = Depends(get_session)):
    with transaction(session, "get week recurring dates"):
        rows = recurrence.get_week_recurring_dates(session, request.employee_id, request.start, request.end)
    return Envelope[NormalizedRecurringDates](
        message="Slots recurring dates have been fetched.", data=NormalizedRecurringDates.from_rows(rows)
    )


# --- Sessions ---


@app.post("/sessions/get-week-sessions", response_model=Envelope[NormalizedSessions])
def get_week_sessions(request: WeekRequest, session: Session = Depends(get_session)):
    logger.info(f"Week sessions request for {request.employee_id}: {request.start} to {request.end}")
    with transaction(session, "get week sessions"):
        rows = bookings.get_week_sessions(session, request.employee_id, request.start, request.end)
    return Envelope[NormalizedSessions](message="Sessions have been fetched.", data=NormalizedSessions.from_rows(rows))


@app.post("/sessions/add-session", response_model=Envelope[SessionChange])
def add_session(request: AddSessionRequest, session: Session = Depends(get_session)):
    logger.info(f"Book slot {request.slot_id} for customer {request.customer_id}")
    with transaction(session, "add session"):
        result = bookings.add_session(session, request.slot_id, request.customer_id, request.message)
    return Envelope[SessionChange](message="Session has been added.", data=result)


@app.put("/sessions/update-session", response_model=Envelope[SessionUpdate])
def update_session(request: UpdateSessionRequest, session: Session = Depends(get_session)):
    logger.info(f"Reschedule session {request.session_id} to slot {request.slot_id}")
    with transaction(session, "update session"):
        result = bookings.update_session(session, request.session_id, request.slot_id)
    return Envelope[SessionUpdate](message="Session has been updated.", data=result)


@app.delete("/sessions/delete-session", response_model=Envelope[DeletedSession])
def delete_session(request: SessionRequest, session: Session = Depends(get_session)):
    logger.info(f"Cancel session {request.session_id}")
    with transaction(session, "delete session"):
        result = bookings.delete_session(session, request.session_id)
    return Envelope[DeletedSession](message="Session has been deleted.", data=result)


@app.post("/sessions/undo-delete-session", response_model=Envelope[SessionChange])
def undo_delete_session(request: UndoDeleteSessionRequest, session: Session = Depends(get_session)):
    logger.info(f"Restore session {request.session.id}")
    with transaction(session, "undo delete session"):
        result = bookings.undo_delete_session(session, request.session)
    return Envelope[SessionChange](message="Session has been restored.", data=result)


# --- Change feed ---


@app.websocket("/stream")
async def stream(websocket: WebSocket, topics: str | None = None):
    """Push ``{topic, eventAction, data}`` for every slot/session change."""
    wanted = [t for t in (topics.split(",") if topics else TOPICS) if t in TOPICS]
    feed: ChangeFeed = websocket.app.state.change_feed
    queue = feed.subscribe(wanted)
    await websocket.accept()

    async def forward():
        while True:
            payload = await queue.get()
            await websocket.send_json(payload)

    sender = asyncio.create_task(forward())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        sender.cancel()
        feed.unsubscribe(queue)
