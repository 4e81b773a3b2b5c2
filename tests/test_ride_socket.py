"""Live ride updates over the /ws/ride socket"""

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import (
    DESTINATION,
    DRIVER,
    DRIVER_ID,
    OTHER_DRIVER_ID,
    PASSENGER,
    PICKUP,
    auth_headers,
    token_for,
)
from ridecore.models.ride_schema import Actor, ActorRole

OTHER_DRIVER = Actor(user_id=OTHER_DRIVER_ID, role=ActorRole.DRIVER)


def connect(client, actor):
    return client.websocket_connect(f"/ws/ride?token={token_for(actor)}")


def create_ride(client) -> str:
    response = client.post(
        "/rides",
        json={"driverId": DRIVER_ID, "pickup": PICKUP, "destination": DESTINATION},
        headers=auth_headers(PASSENGER),
    )
    return response.json()["ride"]["id"]


def receive_both(ws) -> dict:
    """The subscribe reply and the first snapshot may arrive in either order"""
    messages = [ws.receive_json(), ws.receive_json()]
    return {message["event_type"]: message for message in messages}


def test_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/ride") as ws:
            ws.receive_json()
    assert exc_info.value.code == 1008


def test_rejects_invalid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/ride?token=garbage") as ws:
            ws.receive_json()


def test_connected_event_lists_active_rides(client):
    ride_id = create_ride(client)

    with connect(client, PASSENGER) as ws:
        event = ws.receive_json()

    assert event["event_type"] == "connected"
    assert event["user_id"] == PASSENGER.user_id
    assert event["active_rides"] == [{"ride_id": ride_id, "status": "pending"}]


def test_ping_pong(client):
    with connect(client, PASSENGER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "ping"})
        assert ws.receive_json()["event_type"] == "pong"


def test_invalid_messages(client):
    with connect(client, PASSENGER) as ws:
        ws.receive_json()

        ws.send_text("{not json")
        assert ws.receive_json()["message"] == "Invalid JSON format"

        ws.send_json(["subscribe_ride"])
        assert ws.receive_json()["event_type"] == "error"

        ws.send_json({"event_type": "teleport"})
        assert ws.receive_json()["message"] == "Unknown event type: teleport"

        ws.send_json({"event_type": "subscribe_ride"})
        assert ws.receive_json()["message"] == "Missing ride_id"


def test_ride_subscription_streams_changes(client):
    ride_id = create_ride(client)

    with connect(client, PASSENGER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_ride", "ride_id": ride_id})

        events = receive_both(ws)
        assert events["subscribed"]["channel"] == f"ride:{ride_id}"
        assert events["ride_snapshot"]["ride"]["status"] == "pending"

        client.post(f"/rides/{ride_id}/reject", headers=auth_headers(DRIVER))

        snapshot = ws.receive_json()
        assert snapshot["event_type"] == "ride_snapshot"
        assert snapshot["ride_id"] == ride_id
        assert snapshot["ride"]["status"] == "rejected"


def test_subscribe_to_foreign_ride_is_refused(client):
    ride_id = create_ride(client)

    with connect(client, OTHER_DRIVER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_ride", "ride_id": ride_id})
        event = ws.receive_json()

    assert event["event_type"] == "error"
    assert event["error"] == "forbidden"


def test_subscribe_to_unknown_ride(client):
    with connect(client, PASSENGER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_ride", "ride_id": "missing"})
        assert ws.receive_json()["error"] == "not_found"


def test_pending_requests_for_driver(client):
    with connect(client, DRIVER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_pending"})

        events = receive_both(ws)
        assert events["subscribed"]["channel"] == "pending"
        assert events["pending_rides"]["rides"] == []

        ride_id = create_ride(client)

        event = ws.receive_json()
        assert event["event_type"] == "pending_rides"
        assert [r["id"] for r in event["rides"]] == [ride_id]


def test_pending_requests_are_driver_only(client):
    with connect(client, PASSENGER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_pending"})
        assert ws.receive_json()["error"] == "forbidden"


def test_driver_location_update_reaches_subscribers(client):
    ride_id = create_ride(client)
    client.post(f"/rides/{ride_id}/accept", headers=auth_headers(DRIVER))

    with connect(client, DRIVER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_ride", "ride_id": ride_id})
        receive_both(ws)

        ws.send_json(
            {
                "event_type": "location_update",
                "ride_id": ride_id,
                "latitude": 37.865,
                "longitude": 32.475,
            }
        )

        snapshot = ws.receive_json()
        assert snapshot["event_type"] == "ride_snapshot"
        assert snapshot["ride"]["driverLocation"] == {"latitude": 37.865, "longitude": 32.475}


def test_location_update_validation(client):
    with connect(client, DRIVER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "location_update", "latitude": 37.865})
        assert ws.receive_json()["error"] == "validation_error"


def test_unsubscribe(client):
    ride_id = create_ride(client)

    with connect(client, PASSENGER) as ws:
        ws.receive_json()
        ws.send_json({"event_type": "subscribe_ride", "ride_id": ride_id})
        receive_both(ws)

        ws.send_json({"event_type": "unsubscribe", "ride_id": ride_id})
        assert ws.receive_json() == {"event_type": "unsubscribed", "channel": f"ride:{ride_id}"}

        ws.send_json({"event_type": "ping"})
        assert ws.receive_json()["event_type"] == "pong"
