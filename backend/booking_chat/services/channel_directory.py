"""Resolve who may converse about a booking.

A conversation is the booking itself: its two participants are the booking's
customer and the account holder of the booking's provider. Every privileged
message operation calls :func:`resolve_conversation` again; the caller's own
gating is never trusted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..crud.crud_booking import booking as crud_booking
from ..utils.errors import AccessDeniedError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conversation:
    conversation_id: int
    participant_a: int  # customer
    participant_b: int  # provider account holder
    other_participant: int
    status: models.BookingStatus

    @property
    def participants(self) -> tuple[int, int]:
        return (self.participant_a, self.participant_b)

    @property
    def is_open(self) -> bool:
        return is_chat_open(self.status)

    def other_than(self, user_id: int) -> int:
        return self.participant_b if int(user_id) == self.participant_a else self.participant_a


def is_chat_open(status: models.BookingStatus | str | None, engaged: Optional[Iterable[str]] = None) -> bool:
    """Return True while the booking status keeps the chat interactive."""
    if status is None:
        return False
    value = status.value if isinstance(status, models.BookingStatus) else str(status)
    allowed = {s.lower() for s in (engaged if engaged is not None else settings.CHAT_ENGAGED_STATUSES)}
    return value.lower() in allowed


def resolve_conversation(db: Session, booking_id: int, requesting_user_id: int) -> Conversation:
    booking = crud_booking.get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", {"booking_id": "not_found"})
    provider = crud_booking.get_provider(db, booking.provider_id)
    if provider is None:
        # A booking without a resolvable provider has no second participant
        raise NotFoundError("Provider not found", {"provider_id": "not_found"})

    customer_id = int(booking.customer_id)
    provider_user_id = int(provider.user_id)
    user_id = int(requesting_user_id)
    if user_id not in (customer_id, provider_user_id):
        logger.warning(
            "Conversation access denied booking_id=%s user_id=%s", booking_id, user_id
        )
        raise AccessDeniedError("Not a participant of this conversation", {})

    return Conversation(
        conversation_id=int(booking.id),
        participant_a=customer_id,
        participant_b=provider_user_id,
        other_participant=provider_user_id if user_id == customer_id else customer_id,
        status=booking.status,
    )


def require_open(conversation: Conversation) -> None:
    """Raise unless the booking is in a status that allows new chat activity."""
    if not conversation.is_open:
        raise ForbiddenError(
            "Chat is not available for this booking",
            {"status": str(getattr(conversation.status, "value", conversation.status))},
        )
