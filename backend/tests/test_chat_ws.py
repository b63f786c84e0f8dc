import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from booking_chat.api.auth import create_access_token
from booking_chat.main import app


def _token(user):
    return create_access_token({"sub": user.email})


def test_conversation_ws_requires_token(booking):
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/ws/bookings/{booking.id}"):
                pass
    assert exc.value.code == 4401


def test_conversation_ws_rejects_outsider(booking, people):
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(
                f"/ws/bookings/{booking.id}?token={_token(people['outsider'])}"
            ):
                pass
    assert exc.value.code == 4403


def test_conversation_ws_pushes_message_events(booking, people, headers):
    url = f"/api/v1/bookings/{booking.id}/messages"
    with TestClient(app) as client:
        with client.websocket_connect(
            f"/ws/bookings/{booking.id}?token={_token(people['provider_user'])}"
        ) as ws:
            ws.send_json({"v": 1, "type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            sent = client.post(url, json={"content": "Are you free?"}, headers=headers["customer"]).json()
            created = ws.receive_json()
            assert created["type"] == "message.created"
            assert created["topic"] == f"conversation:{booking.id}"
            assert created["payload"]["message"]["id"] == sent["id"]

            client.put(f"{url}/read", headers=headers["provider_user"])
            updated = ws.receive_json()
            assert updated["type"] == "message.updated"
            assert [m["is_read"] for m in updated["payload"]["messages"]] == [True]
            assert updated["payload"]["reader_id"] == people["provider_user"].id

            client.post(f"/api/v1/bookings/{booking.id}/typing", headers=headers["customer"])
            typing = ws.receive_json()
            assert typing["type"] == "typing"
            assert typing["payload"]["user_id"] == people["customer"].id

            client.delete(f"{url}/{sent['id']}", headers=headers["customer"])
            deleted = ws.receive_json()
            assert deleted["type"] == "message.deleted"
            assert deleted["payload"]["id"] == sent["id"]

            client.delete(url, params={"confirm": "true"}, headers=headers["customer"])
            cleared = ws.receive_json()
            assert cleared["type"] == "conversation.cleared"
            assert cleared["payload"]["by_user_id"] == people["customer"].id


def test_typing_frames_are_relayed_between_participants(booking, people):
    with TestClient(app) as client:
        with client.websocket_connect(
            f"/ws/bookings/{booking.id}?token={_token(people['customer'])}"
        ) as customer_ws, client.websocket_connect(
            f"/ws/bookings/{booking.id}",
            subprotocols=["bearer", _token(people["provider_user"])],
        ) as provider_ws:
            customer_ws.send_json({"v": 1, "type": "typing"})
            env = provider_ws.receive_json()
            assert env["type"] == "typing"
            assert env["payload"]["user_id"] == people["customer"].id


def test_notifications_ws_pushes_unread_total(booking, people, headers):
    with TestClient(app) as client:
        with client.websocket_connect(
            f"/ws/notifications?token={_token(people['provider_user'])}"
        ) as ws:
            first = ws.receive_json()
            assert first["type"] == "unread_total"
            assert first["payload"] == {"total": 0, "by_conversation": {}}

            client.post(
                f"/api/v1/bookings/{booking.id}/messages",
                json={"content": "New booking question"},
                headers=headers["customer"],
            )
            changed = ws.receive_json()
            assert changed["type"] == "messages.changed"
            assert changed["payload"]["booking_id"] == booking.id
            total = ws.receive_json()
            assert total["type"] == "unread_total"
            assert total["payload"] == {"total": 1, "by_conversation": {str(booking.id): 1}}

            client.put(f"/api/v1/bookings/{booking.id}/messages/read", headers=headers["provider_user"])
            assert ws.receive_json()["type"] == "messages.changed"
            assert ws.receive_json()["payload"]["total"] == 0


def test_notifications_ws_rejects_bad_token():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/notifications?token=not-a-jwt"):
                pass
    assert exc.value.code == 4401
