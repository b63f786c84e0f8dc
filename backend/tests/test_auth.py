from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from booking_chat.api.auth import TokenError, create_access_token, decode_access_token
from booking_chat.main import app


def test_token_round_trip():
    token = create_access_token({"sub": "Someone@Test.com"})
    assert decode_access_token(token)["sub"] == "Someone@Test.com"


@pytest.mark.parametrize(
    "token,reason",
    [
        (None, "missing"),
        ("", "missing"),
        ("not.a.jwt", "invalid"),
        (create_access_token({"sub": "a@test.com"}, expires_delta=timedelta(seconds=-5)), "expired"),
        (create_access_token({"sub": "a@test.com", "typ": "refresh"}), "invalid_type"),
        (create_access_token({"other": "claim"}), "missing_sub"),
    ],
)
def test_token_rejections(token, reason):
    with pytest.raises(TokenError) as exc:
        decode_access_token(token)
    assert exc.value.reason == reason


def test_cookie_token_is_accepted(people, booking):
    client = TestClient(app)
    client.cookies.set("access_token", create_access_token({"sub": people["customer"].email}))
    response = client.get(f"/api/v1/bookings/{booking.id}/conversation")
    assert response.status_code == 200


def test_email_lookup_ignores_case(people, booking):
    client = TestClient(app)
    token = create_access_token({"sub": "CUSTOMER@test.com"})
    response = client.get(
        f"/api/v1/bookings/{booking.id}/conversation",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 200


def test_inactive_user_rejected(db, people, booking):
    customer = people["customer"]
    customer.is_active = False
    db.commit()
    client = TestClient(app)
    token = create_access_token({"sub": customer.email})
    response = client.get(
        f"/api/v1/bookings/{booking.id}/conversation",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 401


def test_unknown_user_rejected(booking):
    client = TestClient(app)
    token = create_access_token({"sub": "ghost@test.com"})
    response = client.get(
        f"/api/v1/bookings/{booking.id}/conversation",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 401
