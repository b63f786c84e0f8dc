from fastapi.testclient import TestClient

from booking_chat.crud import crud_message
from booking_chat.main import app
from booking_chat.models import BookingStatus, Message


def test_unread_total_etag_and_304(db, booking, people, headers):
    client = TestClient(app)
    crud_message.append(db, booking.id, people["customer"].id, body="ping")

    res = client.get("/api/v1/messages/unread", headers=headers["provider_user"])
    assert res.status_code == 200
    assert res.json() == {"total": 1}
    etag = res.headers["etag"]
    assert etag.startswith('W/"')
    assert res.headers["cache-control"] == "no-cache, private"

    cached = client.get(
        "/api/v1/messages/unread",
        headers={**headers["provider_user"], "If-None-Match": etag},
    )
    assert cached.status_code == 304
    assert cached.headers["etag"] == etag

    crud_message.append(db, booking.id, people["customer"].id, body="pong")
    fresh = client.get(
        "/api/v1/messages/unread",
        headers={**headers["provider_user"], "If-None-Match": etag},
    )
    assert fresh.status_code == 200
    assert fresh.json() == {"total": 2}
    assert fresh.headers["etag"] != etag


def test_per_conversation_counts_match_history(db, booking, make_booking, people, headers):
    """Each count equals the unread rows addressed to the user in that thread."""
    client = TestClient(app)
    customer = people["customer"]
    provider_user = people["provider_user"]
    second = make_booking(BookingStatus.IN_PROGRESS)

    crud_message.append(db, booking.id, provider_user.id, body="a")
    crud_message.append(db, booking.id, provider_user.id, body="b")
    crud_message.append(db, second.id, provider_user.id, body="c")
    crud_message.append(db, second.id, customer.id, body="reply")
    victim = crud_message.append(db, booking.id, provider_user.id, body="d")
    crud_message.delete_own(db, victim.id, provider_user.id)

    data = client.get("/api/v1/messages/unread/by-conversation", headers=headers["customer"]).json()
    counts = {int(k): v for k, v in data["counts"].items()}

    for bid in (booking.id, second.id):
        history = crud_message.fetch_history(db, bid, customer.id)
        expected = sum(1 for m in history if m.receiver_id == customer.id and not m.is_read)
        assert counts.get(bid, 0) == expected
    assert data["total"] == sum(counts.values()) == 3
    assert crud_message.global_unread_count(db, customer.id) == 3


def test_conversation_list_newest_first(db, booking, make_booking, people, headers):
    client = TestClient(app)
    customer = people["customer"]
    provider_user = people["provider_user"]
    older = make_booking(BookingStatus.COMPLETED)
    make_booking()  # no messages, not listed

    crud_message.append(db, booking.id, provider_user.id, body="first thread")
    crud_message.append(db, booking.id, customer.id, body="latest in first")
    # Completed bookings keep their history; seed it directly
    db.add(Message(booking_id=older.id, sender_id=provider_user.id, receiver_id=customer.id, body="old"))
    db.commit()

    res = client.get("/api/v1/conversations", headers=headers["customer"])
    assert res.status_code == 200
    rows = res.json()
    assert [r["booking_id"] for r in rows] == [older.id, booking.id]

    newest, oldest = rows
    assert newest["status"] == "completed"
    assert newest["is_open"] is False
    assert newest["unread_count"] == 1
    assert newest["last_message"]["body"] == "old"
    assert newest["other_participant"]["name"] == "Pat's Sound"

    assert oldest["last_message"]["body"] == "latest in first"
    assert oldest["unread_count"] == 1

    provider_view = client.get("/api/v1/conversations", headers=headers["provider_user"]).json()
    assert provider_view[-1]["other_participant"]["name"] == "Cara User"
    assert provider_view[-1]["unread_count"] == 1


def test_outsider_has_no_conversations(db, booking, people, headers):
    crud_message.append(db, booking.id, people["customer"].id, body="hi")
    client = TestClient(app)
    assert client.get("/api/v1/conversations", headers=headers["outsider"]).json() == []
    assert client.get("/api/v1/messages/unread", headers=headers["outsider"]).json() == {"total": 0}
