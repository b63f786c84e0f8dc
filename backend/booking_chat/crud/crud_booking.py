"""Read-only access to the booking collaborator's tables."""

from sqlalchemy.orm import Session
from typing import List, Optional

from .. import models


class CRUDBooking:
    def get_booking(self, db: Session, booking_id: int) -> Optional[models.Booking]:
        return db.query(models.Booking).filter(models.Booking.id == booking_id).first()

    def get_provider(self, db: Session, provider_id: int) -> Optional[models.ServiceProvider]:
        return (
            db.query(models.ServiceProvider)
            .filter(models.ServiceProvider.id == provider_id)
            .first()
        )

    def get_bookings(self, db: Session, booking_ids: List[int]) -> List[models.Booking]:
        if not booking_ids:
            return []
        return db.query(models.Booking).filter(models.Booking.id.in_(booking_ids)).all()

    def get_user(self, db: Session, user_id: int) -> Optional[models.User]:
        return db.query(models.User).filter(models.User.id == user_id).first()


booking = CRUDBooking()
