from typing import Optional
from pydantic import BaseModel

from ..models.booking_status import BookingStatus
from .message import MessageResponse


class ConversationResponse(BaseModel):
    conversation_id: int
    participant_a: int
    participant_b: int
    other_participant: int
    status: BookingStatus
    is_open: bool

    model_config = {"from_attributes": True}


class ParticipantSummary(BaseModel):
    id: int
    name: str
    avatar_url: Optional[str] = None


class ConversationSummary(BaseModel):
    """One row of the chat list shown on dashboards."""

    booking_id: int
    status: BookingStatus
    is_open: bool
    other_participant: Optional[ParticipantSummary] = None
    last_message: MessageResponse
    unread_count: int = 0
