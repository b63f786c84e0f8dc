from .user import User, UserType
from .service_provider import ServiceProvider
from .booking import Booking
from .booking_status import BookingStatus
from .message import Message, MessageKind

__all__ = [
    "User",
    "UserType",
    "ServiceProvider",
    "Booking",
    "BookingStatus",
    "Message",
    "MessageKind",
]
