# backend/booking_chat/models/service_provider.py

from sqlalchemy import Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from .base import BaseModel


class ServiceProvider(BaseModel):
    """Provider listing bound to the account that answers its bookings."""

    __tablename__ = "service_providers"

    id            = Column(Integer, primary_key=True, index=True)
    user_id       = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    business_name = Column(String, nullable=True)

    user     = relationship("User", back_populates="provider")
    bookings = relationship("Booking", back_populates="provider")
