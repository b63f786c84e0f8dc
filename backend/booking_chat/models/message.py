from sqlalchemy import (
    Column,
    Integer,
    Text,
    DateTime,
    ForeignKey,
    String,
    Boolean,
    Index,
)
from sqlalchemy.orm import relationship
import enum

from .base import BaseModel, utcnow
from .types import CaseInsensitiveEnum


class MessageKind(str, enum.Enum):
    """What ``Message.body`` holds."""

    TEXT = "text"
    # ``body`` is the public URL returned by the attachment uploader
    ATTACHMENT = "attachment"


class Message(BaseModel):
    __tablename__ = "messages"
    __table_args__ = (
        # History reads: one conversation in (created_at, id) order
        Index("ix_messages_booking_time_id", "booking_id", "created_at", "id"),
        # Unread aggregation is a single lookup on the denormalised receiver
        Index("ix_messages_receiver_unread", "receiver_id", "is_read", "booking_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    body = Column(Text, nullable=False)
    kind = Column(
        CaseInsensitiveEnum(MessageKind, name="messagekind"),
        nullable=False,
        default=MessageKind.TEXT,
    )
    mime_hint = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    booking = relationship("Booking")
    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])

    @property
    def is_attachment(self) -> bool:
        return self.kind == MessageKind.ATTACHMENT
