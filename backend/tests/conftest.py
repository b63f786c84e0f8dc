import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv
import pytest

# Load environment variables for tests before the app reads its settings
load_dotenv(Path(__file__).resolve().parents[1] / ".env.test")
os.environ.setdefault("PYTEST_RUN", "1")
os.environ.setdefault("ATTACHMENTS_DIR", tempfile.mkdtemp(prefix="chat-attachments-"))

from booking_chat.api.auth import create_access_token  # noqa: E402
from booking_chat.database import Base, SessionLocal, engine  # noqa: E402
from booking_chat.models import (  # noqa: E402
    Booking,
    BookingStatus,
    ServiceProvider,
    User,
    UserType,
)
from booking_chat.realtime.hub import hub  # noqa: E402
from booking_chat.services import redis_client  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts with empty tables and no live subscriptions."""
    Base.metadata.create_all(bind=engine)
    yield
    hub.reset()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Keep the Redis bus off unless a test opts in."""
    monkeypatch.setattr("booking_chat.core.config.settings.WS_BUS_ENABLED", False)
    redis_client.set_redis(None)
    yield
    redis_client.set_redis(None)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def create_user(db, email, first_name="Test", user_type=UserType.CUSTOMER):
    user = User(email=email, first_name=first_name, last_name="User", user_type=user_type)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_booking(db, customer, provider, status=BookingStatus.ACCEPTED):
    booking = Booking(customer_id=customer.id, provider_id=provider.id, status=status)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def auth_headers(user):
    token = create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def people(db):
    """A customer, a provider account with its listing, and an outsider."""
    customer = create_user(db, "customer@test.com", "Cara")
    provider_user = create_user(db, "provider@test.com", "Pat", UserType.SERVICE_PROVIDER)
    outsider = create_user(db, "outsider@test.com", "Olly")
    provider = ServiceProvider(user_id=provider_user.id, business_name="Pat's Sound")
    db.add(provider)
    db.commit()
    db.refresh(provider)
    return {
        "customer": customer,
        "provider_user": provider_user,
        "provider": provider,
        "outsider": outsider,
    }


@pytest.fixture
def booking(db, people):
    return create_booking(db, people["customer"], people["provider"])


@pytest.fixture
def make_booking(db, people):
    def _make(status=BookingStatus.ACCEPTED, customer=None):
        return create_booking(db, customer or people["customer"], people["provider"], status)

    return _make


@pytest.fixture
def headers(people):
    return {name: auth_headers(user) for name, user in people.items() if isinstance(user, User)}
