from fastapi.testclient import TestClient

from booking_chat.main import app
from booking_chat.models import BookingStatus, Message
from booking_chat.utils.attachments import is_attachment


def _counts(client, headers):
    by_conv = client.get("/api/v1/messages/unread/by-conversation", headers=headers).json()
    total = client.get("/api/v1/messages/unread", headers=headers).json()["total"]
    return total, {int(k): v for k, v in by_conv["counts"].items()}


def test_requires_authentication(booking):
    client = TestClient(app)
    res = client.get(f"/api/v1/bookings/{booking.id}/messages")
    assert res.status_code == 401


def test_read_conversation(booking, people, headers):
    client = TestClient(app)
    res = client.get(f"/api/v1/bookings/{booking.id}/conversation", headers=headers["customer"])
    assert res.status_code == 200
    data = res.json()
    assert data["conversation_id"] == booking.id
    assert data["other_participant"] == people["provider_user"].id
    assert data["is_open"] is True
    assert data["status"] == "accepted"


def test_send_then_read_clears_counts(booking, headers):
    """P1 sends, P2 sees one unread, P2 reads, counts go back to zero."""
    client = TestClient(app)
    res = client.post(
        f"/api/v1/bookings/{booking.id}/messages",
        json={"content": "Hello"},
        headers=headers["customer"],
    )
    assert res.status_code == 201
    body = res.json()
    assert body["body"] == "Hello"
    assert body["kind"] == "text"
    assert body["is_read"] is False

    assert _counts(client, headers["provider_user"]) == (1, {booking.id: 1})
    # Sender has nothing unread
    assert _counts(client, headers["customer"]) == (0, {})

    res = client.put(f"/api/v1/bookings/{booking.id}/messages/read", headers=headers["provider_user"])
    assert res.status_code == 200
    assert res.json()["updated"] == 1
    flipped = res.json()["messages"]
    assert [m["body"] for m in flipped] == ["Hello"]
    assert flipped[0]["is_read"] is True

    assert _counts(client, headers["provider_user"]) == (0, {})

    again = client.put(f"/api/v1/bookings/{booking.id}/messages/read", headers=headers["provider_user"])
    assert again.json() == {"updated": 0, "message_ids": [], "messages": []}


def test_upload_then_send_attachment(booking, headers):
    client = TestClient(app)
    payload = b"\xff\xd8\xff" + b"0" * (2 * 1024 * 1024 - 3)
    res = client.post(
        f"/api/v1/bookings/{booking.id}/attachments",
        files={"file": ("venue.jpg", payload, "image/jpeg")},
        headers=headers["customer"],
    )
    assert res.status_code == 201
    uploaded = res.json()
    url = uploaded["url"]
    assert uploaded["size"] == len(payload)
    assert uploaded["content_type"] == "image/jpeg"
    assert is_attachment(url)

    res = client.post(
        f"/api/v1/bookings/{booking.id}/messages",
        json={"attachment_url": url, "mime_hint": "image/jpeg"},
        headers=headers["customer"],
    )
    assert res.status_code == 201
    assert res.json()["is_attachment"] is True

    history = client.get(f"/api/v1/bookings/{booking.id}/messages", headers=headers["provider_user"]).json()
    assert [m["body"] for m in history["items"]] == [url]
    assert history["items"][0]["mime_hint"] == "image/jpeg"

    # Served back through the static mount
    assert client.get(url).content == payload


def test_outsider_cannot_send(booking, headers, db):
    client = TestClient(app)
    res = client.post(
        f"/api/v1/bookings/{booking.id}/messages",
        json={"content": "hi"},
        headers=headers["outsider"],
    )
    assert res.status_code == 403
    assert db.query(Message).count() == 0


def test_outsider_cannot_read_history_or_mark_read(booking, headers):
    client = TestClient(app)
    res = client.get(f"/api/v1/bookings/{booking.id}/messages", headers=headers["outsider"])
    assert res.status_code == 403
    res = client.put(f"/api/v1/bookings/{booking.id}/messages/read", headers=headers["outsider"])
    assert res.status_code == 403


def test_delete_conversation_drops_unread(booking, make_booking, headers):
    client = TestClient(app)
    other = make_booking()
    for text in ("one", "two", "three"):
        client.post(
            f"/api/v1/bookings/{booking.id}/messages",
            json={"content": text},
            headers=headers["provider_user"],
        )
    client.post(
        f"/api/v1/bookings/{other.id}/messages",
        json={"content": "keep me"},
        headers=headers["provider_user"],
    )
    before_total, before = _counts(client, headers["customer"])
    assert before[booking.id] == 3

    # No confirmation, nothing happens
    res = client.delete(f"/api/v1/bookings/{booking.id}/messages", headers=headers["provider_user"])
    assert res.status_code == 422
    assert _counts(client, headers["customer"]) == (before_total, before)

    res = client.delete(
        f"/api/v1/bookings/{booking.id}/messages",
        params={"confirm": "true"},
        headers=headers["provider_user"],
    )
    assert res.status_code == 200
    assert res.json() == {"deleted": 3}

    for who in ("customer", "provider_user"):
        history = client.get(f"/api/v1/bookings/{booking.id}/messages", headers=headers[who]).json()
        assert history["items"] == []
    after_total, after = _counts(client, headers["customer"])
    assert after_total == before_total - 3
    assert after == {other.id: 1}


def test_delete_own_message(booking, headers):
    client = TestClient(app)
    msg = client.post(
        f"/api/v1/bookings/{booking.id}/messages",
        json={"content": "typo"},
        headers=headers["customer"],
    ).json()

    res = client.delete(
        f"/api/v1/bookings/{booking.id}/messages/{msg['id']}", headers=headers["provider_user"]
    )
    assert res.status_code == 403

    res = client.delete(f"/api/v1/bookings/{booking.id}/messages/{msg['id']}", headers=headers["customer"])
    assert res.status_code == 204

    res = client.delete(f"/api/v1/bookings/{booking.id}/messages/{msg['id']}", headers=headers["customer"])
    assert res.status_code == 404


def test_validation_errors(booking, headers):
    client = TestClient(app)
    res = client.post(
        f"/api/v1/bookings/{booking.id}/messages",
        json={"content": "   "},
        headers=headers["customer"],
    )
    assert res.status_code == 422

    res = client.post(
        f"/api/v1/bookings/{booking.id}/messages",
        json={"content": "both", "attachment_url": "/attachments/x.png"},
        headers=headers["customer"],
    )
    assert res.status_code == 422


def test_closed_booking_blocks_sending(make_booking, headers):
    client = TestClient(app)
    done = make_booking(BookingStatus.COMPLETED)
    res = client.post(
        f"/api/v1/bookings/{done.id}/messages",
        json={"content": "late"},
        headers=headers["customer"],
    )
    assert res.status_code == 403
    detail = res.json()["detail"]
    assert detail["message"] == "Chat is not available for this booking"
    assert detail["field_errors"] == {"status": "completed"}

    res = client.post(f"/api/v1/bookings/{done.id}/typing", headers=headers["customer"])
    assert res.status_code == 403

    res = client.get(f"/api/v1/bookings/{done.id}/messages", headers=headers["customer"])
    assert res.status_code == 200


def test_unknown_booking_is_404(people, headers):
    client = TestClient(app)
    res = client.get("/api/v1/bookings/4242/messages", headers=headers["customer"])
    assert res.status_code == 404
    assert res.json()["detail"]["field_errors"] == {"booking_id": "not_found"}


def test_history_pagination(booking, headers):
    client = TestClient(app)
    ids = [
        client.post(
            f"/api/v1/bookings/{booking.id}/messages",
            json={"content": f"m{i}"},
            headers=headers["customer"],
        ).json()["id"]
        for i in range(5)
    ]
    url = f"/api/v1/bookings/{booking.id}/messages"

    page = client.get(url, params={"before_id": ids[4], "limit": 2}, headers=headers["customer"]).json()
    assert [m["id"] for m in page["items"]] == ids[2:4]
    assert page["has_more"] is True
    assert page["next_before_id"] == ids[2]

    newer = client.get(url, params={"after_id": ids[1]}, headers=headers["customer"]).json()
    assert [m["id"] for m in newer["items"]] == ids[2:]
    assert newer["last_id"] == ids[4]

    empty = client.get(url, params={"after_id": ids[4]}, headers=headers["customer"]).json()
    assert empty["items"] == []
    assert empty["last_id"] == ids[4]
