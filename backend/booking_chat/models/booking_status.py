import enum


class BookingStatus(str, enum.Enum):
    """Booking lifecycle states as owned by the booking collaborator."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
