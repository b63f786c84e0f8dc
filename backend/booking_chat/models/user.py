# backend/booking_chat/models/user.py

from sqlalchemy import Boolean, Column, Integer, String, Enum
from sqlalchemy.orm import relationship
from .base import BaseModel
import enum


class UserType(str, enum.Enum):
    """Enumeration of all supported user roles."""

    SERVICE_PROVIDER = "service_provider"
    CUSTOMER = "customer"

    @classmethod
    def _missing_(cls, value: object):
        """Map legacy enum values to current ones."""
        if isinstance(value, str) and value.upper() == "CLIENT":
            return cls.CUSTOMER
        return None


class User(BaseModel):
    """Account holder as seen by the messaging core.

    Authentication lives with the identity collaborator; only the fields the
    chat needs to resolve participants and render counterparts are kept here.
    """

    __tablename__ = "users"

    id         = Column(Integer, primary_key=True, index=True)
    email      = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=False, default="")
    last_name  = Column(String, nullable=False, default="")
    user_type  = Column(Enum(UserType), nullable=False, default=UserType.CUSTOMER)
    is_active  = Column(Boolean, default=True)
    avatar_url = Column(String, nullable=True)

    # ↔–↔ If this user is a service provider, they own exactly one provider row
    provider = relationship(
        "ServiceProvider",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
