"""Undo Ledger: short-lived inverse-action descriptors.

Each entry carries an ``ActionKind`` tag and the payload its inverse needs.
Expiry is a monotonic deadline checked under the same lock as ``claim``, so an
entry is either claimed for undo or expired, never both.
"""
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID, uuid4

UNDO_WINDOW_SECONDS = 5.0


class ActionKind(str, Enum):
    ADD_RECURRING_SLOT = "add-recurring-slot"
    UPDATE_SLOT_HOUR = "update-slot-hour"
    UPDATE_RECURRING_SLOT_HOUR = "update-recurring-slot-hour"
    UPDATE_SLOT_MINUTES = "update-slot-minutes"
    UPDATE_RECURRING_SLOT_MINUTES = "update-recurring-slot-minutes"
    DELETE_SLOTS = "delete-slots"
    DUPLICATE_DAY = "duplicate-day"
    SET_SLOT_RECURRENCE = "set-slot-recurrence"
    DISABLE_SLOT_RECURRENCE = "disable-slot-recurrence"
    SET_RECURRING_DAY = "set-recurring-day"
    DISABLE_RECURRING_DAY = "disable-recurring-day"
    ADD_SESSION = "add-session"
    UPDATE_SESSION = "update-session"
    DELETE_SESSION = "delete-session"


@dataclass
class UndoEntry:
    kind: ActionKind
    message: str
    payload: dict
    deadline: float
    id: UUID = field(default_factory=uuid4)


class UndoLedger:
    def __init__(self, ttl: float = UNDO_WINDOW_SECONDS, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: list[UndoEntry] = []
        self._lock = threading.Lock()

    def _expire(self) -> None:
        now = self._clock()
        self._entries = [entry for entry in self._entries if entry.deadline > now]

    def push(self, kind: ActionKind, message: str, payload: dict) -> UndoEntry:
        entry = UndoEntry(kind=kind, message=message, payload=payload, deadline=self._clock() + self.ttl)
        with self._lock:
            self._expire()
            self._entries.append(entry)
        return entry

    def pending(self) -> list[UndoEntry]:
        """Live entries, oldest first."""
        with self._lock:
            self._expire()
            return list(self._entries)

    def claim(self, entry_id: UUID | None = None) -> UndoEntry | None:
        """Take an entry out of the ledger for undo; the newest one by default.

        Returns None when the entry expired, was already claimed or never existed.
        """
        with self._lock:
            self._expire()
            for index in range(len(self._entries) - 1, -1, -1):
                if entry_id is None or self._entries[index].id == entry_id:
                    return self._entries.pop(index)
        return None

    def discard(self, entry_id: UUID) -> bool:
        return self.claim(entry_id) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self.pending())
