"""Applies change feed payloads from ``/stream`` to a client's week caches.

The feed is a best-effort hint: events may arrive out of order or repeat a
mutation this client already applied, so every patch is idempotent.
"""
import logging

from pydantic import ValidationError

from client.api import SchedulingClient
from schemas import SessionRead, SlotRead

logger = logging.getLogger(__name__)


class ChangeStreamListener:
    def __init__(self, client: SchedulingClient):
        self.client = client
        self._topics = {
            "slots": (SlotRead, client.slots),
            "sessions": (SessionRead, client.sessions),
        }

    def apply(self, payload: dict) -> bool:
        """Patch the matching cache; True if a cached window changed."""
        topic = self._topics.get(payload.get("topic"))
        if topic is None:
            logger.warning(f"Ignoring change event for unknown topic {payload.get('topic')!r}")
            return False
        action = payload.get("eventAction")
        if action not in ("create", "update", "delete"):
            logger.warning(f"Ignoring change event with action {action!r}")
            return False
        model, cache = topic
        try:
            row = model.model_validate(payload["data"])
        except (KeyError, ValidationError) as e:
            logger.warning(f"Ignoring malformed change event: {e}")
            return False
        return cache.patch(action, [row])

    def listen(self, connection, max_events: int | None = None) -> int:
        """Read payloads from anything with ``receive_json()`` until ``max_events``."""
        handled = 0
        while max_events is None or handled < max_events:
            self.apply(connection.receive_json())
            handled += 1
        return handled
