# backend/booking_chat/models/booking.py

from sqlalchemy import Column, Integer, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from .base import BaseModel
from .booking_status import BookingStatus
from .types import CaseInsensitiveEnum


class Booking(BaseModel):
    __tablename__ = "bookings"

    id             = Column(Integer, primary_key=True, index=True)
    customer_id    = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_id    = Column(Integer, ForeignKey("service_providers.id"), nullable=False, index=True)
    status         = Column(
        CaseInsensitiveEnum(BookingStatus, name="bookingstatus"),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True,
    )
    scheduled_date = Column(DateTime, nullable=True)
    notes          = Column(String, nullable=True)

    # Relationships
    customer = relationship("User", foreign_keys=[customer_id])
    provider = relationship("ServiceProvider", back_populates="bookings")
