import asyncio
from datetime import timedelta

from conftest import at

from app import app
from change_feed import ChangeFeed
from models import SlotType


def slot_payload(topic="slots", action="create"):
    return {"topic": topic, "eventAction": action, "data": {}}


def test_drain_turns_outbox_rows_into_payloads(test_session, employee_id, monday, make_slot):
    """Test that a slot insert reaches the outbox and drains as a camelCase payload."""
    feed = ChangeFeed()
    slot = make_slot(employee_id, at(monday, 9), duration=45)

    payloads = feed.drain(test_session)

    assert len(payloads) == 1
    payload = payloads[0]
    assert payload["topic"] == "slots"
    assert payload["eventAction"] == "create"
    assert payload["data"]["id"] == str(slot.id)
    assert payload["data"]["employeeId"] == str(employee_id)
    assert payload["data"]["startTime"] == f"{monday.isoformat()}T09:00:00"
    assert payload["data"]["duration"] == 45
    assert payload["data"]["recurring"] is False
    # drained rows are consumed
    assert feed.drain(test_session) == []


def test_session_events_carry_customer_fields(client, test_session, employee_id, monday, make_slot, customer):
    feed = ChangeFeed()
    slot = make_slot(employee_id, at(monday, 10))
    feed.drain(test_session)

    client.post("/sessions/add-session", json={"slotId": str(slot.id), "customerId": str(customer.id)})
    payloads = feed.drain(test_session)

    assert [(p["topic"], p["eventAction"]) for p in payloads] == [("slots", "update"), ("sessions", "create")]
    assert payloads[0]["data"]["type"] == SlotType.BOOKED.value
    session = payloads[1]["data"]
    assert session["slotId"] == str(slot.id)
    assert session["customerFullName"] == "Ada Lovelace"
    assert session["customerEmail"] == "ada@example.com"


def test_delete_events_carry_the_old_row(client, test_session, employee_id, monday, make_slot):
    feed = ChangeFeed()
    slot = make_slot(employee_id, at(monday + timedelta(days=3), 17))
    feed.drain(test_session)

    client.request("DELETE", "/slots/delete-slots", json={"employeeId": str(employee_id), "slotIds": [str(slot.id)]})
    [payload] = feed.drain(test_session)

    assert payload["eventAction"] == "delete"
    assert payload["data"]["id"] == str(slot.id)


def test_rolled_back_transaction_publishes_nothing(client, test_session, employee_id, monday, make_slot, customer):
    """Test that writes undone by a failed transition never reach the outbox."""
    feed = ChangeFeed()
    slot = make_slot(employee_id, at(monday, 9))
    blocked = make_slot(employee_id, at(monday, 14), slot_type=SlotType.BLOCKED)
    data = client.post(
        "/sessions/add-session", json={"slotId": str(slot.id), "customerId": str(customer.id)}
    ).json()["data"]
    feed.drain(test_session)

    response = client.put(
        "/sessions/update-session", json={"sessionId": data["session"]["id"], "slotId": str(blocked.id)}
    )

    assert response.json()["message"] == "Slot is not available."
    assert feed.drain(test_session) == []


def test_publish_filters_by_topic():
    feed = ChangeFeed()

    async def scenario():
        slots_only = feed.subscribe(["slots"])
        everything = feed.subscribe()
        feed.publish([slot_payload(), slot_payload("sessions"), slot_payload(action="update")])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return slots_only.qsize(), everything.qsize()

    assert asyncio.run(scenario()) == (2, 3)


def test_slow_subscriber_drops_events():
    feed = ChangeFeed(max_queue=1)

    async def scenario():
        queue = feed.subscribe()
        feed.publish([slot_payload(), slot_payload(action="update")])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        feed.unsubscribe(queue)
        return queue.qsize(), feed.subscriber_count

    assert asyncio.run(scenario()) == (1, 0)


def test_publish_drops_subscribers_on_closed_loops():
    feed = ChangeFeed()

    async def register():
        return feed.subscribe()

    # asyncio.run closes the loop the queue was registered on
    asyncio.run(register())

    async def scenario():
        live = feed.subscribe()
        feed.publish([slot_payload(), slot_payload(action="update")])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return live.qsize(), feed.subscriber_count

    assert asyncio.run(scenario()) == (2, 1)


def test_stream_pushes_subscribed_topics(client, test_session, employee_id, monday, make_slot, customer):
    """Test that a WebSocket subscriber receives only the topics it asked for."""
    slot = make_slot(employee_id, at(monday, 11))
    feed = app.state.change_feed
    feed.drain(test_session)

    with client.websocket_connect("/stream?topics=sessions") as websocket:
        client.post("/sessions/add-session", json={"slotId": str(slot.id), "customerId": str(customer.id)})
        assert feed.pump(test_session) == 2

        payload = websocket.receive_json()

    assert payload["topic"] == "sessions"
    assert payload["eventAction"] == "create"
    assert payload["data"]["slotId"] == str(slot.id)
    assert payload["data"]["customerFullName"] == "Ada Lovelace"
