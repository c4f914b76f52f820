from client.api import ApiError, SchedulingClient
from client.change_stream import ChangeStreamListener
from client.undo_ledger import ActionKind, UndoEntry, UndoLedger
from client.week_cache import WeekCache, week_window

__all__ = [
    "ActionKind",
    "ApiError",
    "ChangeStreamListener",
    "SchedulingClient",
    "UndoEntry",
    "UndoLedger",
    "WeekCache",
    "week_window",
]
