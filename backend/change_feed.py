"""Change Feed: turns trigger-written outbox rows into broadcast payloads.

The ``slots`` and ``sessions`` triggers (see migrations) append a JSON snapshot
of every changed row to ``change_events``. ``ChangeFeed.drain`` consumes those
rows in order and ``ChangeFeed.publish`` fans the payloads out to WebSocket
subscribers. Delivery is best-effort: a subscriber that falls behind loses
events rather than blocking the pump.
"""
import asyncio
import json
import logging
import threading
import uuid

from sqlmodel import Session, delete, select

from db import engine
from models import ChangeEvent, Customer
from schemas import SessionRead, SlotRead

logger = logging.getLogger(__name__)

TOPICS = ("slots", "sessions")


def _customer_fields(session: Session, customer_id) -> dict:
    customer = session.get(Customer, uuid.UUID(str(customer_id)))
    if customer is None:
        return {}
    return {
        "customer_full_name": f"{customer.first_name} {customer.last_name}",
        "customer_email": customer.email,
        "customer_phone_number": customer.phone_number,
    }


def to_payload(session: Session, event: ChangeEvent) -> dict:
    """``{topic, eventAction, data}`` for one outbox row."""
    row = json.loads(event.row_data)
    if event.topic == "sessions":
        data = SessionRead.model_validate({**row, **_customer_fields(session, row["customer_id"])})
    else:
        data = SlotRead.model_validate(row)
    return {"topic": event.topic, "eventAction": event.event_action, "data": data.to_json()}


class ChangeFeed:
    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._subscribers: dict[asyncio.Queue, tuple[asyncio.AbstractEventLoop, frozenset]] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, topics=TOPICS) -> asyncio.Queue:
        """Register a queue on the running event loop."""
        queue = asyncio.Queue(maxsize=self.max_queue)
        with self._lock:
            self._subscribers[queue] = (asyncio.get_running_loop(), frozenset(topics))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.pop(queue, None)

    def publish(self, payloads: list[dict]) -> None:
        """Hand payloads to every subscriber; safe to call from any thread."""
        with self._lock:
            subscribers = list(self._subscribers.items())
        for queue, (loop, topics) in subscribers:
            try:
                for payload in payloads:
                    if payload["topic"] in topics:
                        loop.call_soon_threadsafe(self._offer, queue, payload)
            except RuntimeError:
                # the subscriber's event loop is closed
                logger.warning("Dropping a subscriber whose event loop has closed")
                self.unsubscribe(queue)

    @staticmethod
    def _offer(queue: asyncio.Queue, payload: dict) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Dropping {payload['topic']} event for a slow subscriber")

    def drain(self, session: Session, limit: int = 500) -> list[dict]:
        """Consume up to ``limit`` pending outbox rows and return their payloads."""
        events = session.exec(select(ChangeEvent).order_by(ChangeEvent.id).limit(limit)).all()
        if not events:
            return []
        payloads = [to_payload(session, event) for event in events]
        session.exec(delete(ChangeEvent).where(ChangeEvent.id <= events[-1].id))
        session.commit()
        return payloads

    def pump(self, session: Session) -> int:
        payloads = self.drain(session)
        if payloads:
            self.publish(payloads)
        return len(payloads)

    def _pump_once(self) -> int:
        with Session(engine) as session:
            return self.pump(session)

    async def run(self, interval: float) -> None:
        """Drain and publish every ``interval`` seconds until cancelled."""
        logger.info(f"Change feed pump started (every {interval}s)")
        while True:
            try:
                count = await asyncio.to_thread(self._pump_once)
                if count:
                    logger.info(f"Published {count} change events")
            except Exception as e:
                logger.error(f"Change feed pump failed: {str(e)}")
            await asyncio.sleep(interval)
