"""Booking repository - persistence and guarded status writes for bookings"""

import logging
import secrets
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from ...models import Booking, Service, utcnow
from ...shared.exceptions import ConflictError, NotFoundError, ValidationError
from ...shared.geo import is_valid_latitude, is_valid_longitude
from .state_machine import ACTIVE_ASSIGNMENT_STATUSES, OPEN_STATUSES, BookingStatus

logger = logging.getLogger(__name__)

# Columns a tracking ping may write; never status or version
TRACKING_COLUMNS = frozenset(
    {"tracking_longitude", "tracking_latitude", "tracking_updated_at", "eta_minutes"}
)


def generate_verification_code() -> str:
    """Uniformly random 6-digit code (100000-999999)"""
    return str(100000 + secrets.randbelow(900000))


class BookingStore:
    """Repository for booking database operations"""

    @staticmethod
    def create(
        db: Session,
        customer_id: str,
        service: Optional[Service],
        coordinates: Optional[Iterable[float]],
        scheduled_date: Optional[datetime],
        address: Optional[str] = None,
        is_emergency: bool = False,
    ) -> Booking:
        """
        Create a pending booking. Flushes but does not commit.

        Raises:
            ValidationError: If service, coordinates or scheduled time is missing or malformed
        """
        if service is None or not coordinates or scheduled_date is None:
            raise ValidationError("Missing required fields")

        try:
            longitude, latitude = (float(v) for v in coordinates)
        except (TypeError, ValueError):
            raise ValidationError("Coordinates must be [longitude, latitude]")
        if not is_valid_latitude(latitude) or not is_valid_longitude(longitude):
            raise ValidationError(
                "Latitude must be between -90 and 90, longitude between -180 and 180"
            )

        booking = Booking(
            customer_id=customer_id,
            service_id=service.id,
            status=BookingStatus.PENDING.value,
            version=1,
            longitude=longitude,
            latitude=latitude,
            address=address,
            scheduled_date=scheduled_date,
            total_amount=service.base_price,
            verification_code=generate_verification_code(),
            is_emergency=is_emergency,
            priority="high" if is_emergency else "normal",
            rescheduling_history=[],
            notified_professional_ids=[],
            dispatch_attempts=0,
            next_dispatch_at=utcnow(),
        )
        db.add(booking)
        db.flush()
        return booking

    @staticmethod
    def get(db: Session, booking_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    @staticmethod
    def require(db: Session, booking_id: str) -> Booking:
        booking = BookingStore.get(db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    @staticmethod
    def transition(
        db: Session,
        booking_id: str,
        allowed_from: Iterable[str],
        to_status: Optional[str],
        mutation: Optional[Callable[[Booking], dict]] = None,
        conflict_message: str = "Booking already processed",
    ) -> Booking:
        """
        Compare-and-set status write.

        Reads the booking, and only if its status is in allowed_from applies
        mutation (a function returning column values) and writes to_status.
        The UPDATE itself re-checks status and version, so if a concurrent
        transaction committed first this call matches zero rows and raises
        ConflictError without writing. to_status=None keeps the current status.

        Does not commit; the caller owns the transaction.

        Raises:
            NotFoundError: If the booking does not exist
            ConflictError: If the status guard fails or a concurrent write won
        """
        allowed = frozenset(str(getattr(s, "value", s)) for s in allowed_from)
        booking = BookingStore.require(db, booking_id)

        if booking.status not in allowed:
            logger.info(
                f"⛔ Booking {booking_id} guard failed: status={booking.status}, allowed={sorted(allowed)}"
            )
            raise ConflictError(conflict_message)

        read_version = booking.version
        values = dict(mutation(booking)) if mutation else {}
        values["status"] = str(getattr(to_status, "value", to_status)) if to_status else booking.status
        values["version"] = read_version + 1
        values["updated_at"] = utcnow()

        updated = (
            db.query(Booking)
            .filter(
                Booking.id == booking_id,
                Booking.status.in_(allowed),
                Booking.version == read_version,
            )
            .update(values, synchronize_session=False)
        )
        if not updated:
            logger.info(f"⛔ Booking {booking_id} lost a concurrent write at version {read_version}")
            raise ConflictError(conflict_message)

        db.refresh(booking)
        return booking

    @staticmethod
    def update_tracking(db: Session, booking_id: str, values: dict) -> bool:
        """
        Write tracking snapshot columns for a booking in an active assignment status.

        Leaves status and version untouched so pings never conflict with dispatch writes.
        Returns False when the booking is no longer being tracked.
        """
        unknown = set(values) - TRACKING_COLUMNS
        if unknown:
            raise ValueError(f"Not tracking columns: {sorted(unknown)}")

        updated = (
            db.query(Booking)
            .filter(
                Booking.id == booking_id,
                Booking.status.in_([s.value for s in ACTIVE_ASSIGNMENT_STATUSES]),
            )
            .update(values, synchronize_session=False)
        )
        return bool(updated)

    @staticmethod
    def history(
        db: Session,
        customer_id: Optional[str] = None,
        professional_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[Booking]:
        """Bookings of a customer or professional, newest first"""
        query = db.query(Booking)
        if customer_id is not None:
            query = query.filter(Booking.customer_id == customer_id)
        if professional_id is not None:
            query = query.filter(Booking.professional_id == professional_id)
        return query.order_by(desc(Booking.created_at)).limit(limit).all()

    @staticmethod
    def active(
        db: Session, customer_id: Optional[str] = None, professional_id: Optional[str] = None
    ) -> Optional[Booking]:
        """The most recent open booking of a customer or professional"""
        query = db.query(Booking).filter(Booking.status.in_([s.value for s in OPEN_STATUSES]))
        if customer_id is not None:
            query = query.filter(Booking.customer_id == customer_id)
        if professional_id is not None:
            query = query.filter(Booking.professional_id == professional_id)
        return query.order_by(desc(Booking.created_at)).first()

    @staticmethod
    def due_for_dispatch(db: Session, now: datetime, limit: int = 50) -> list[Booking]:
        """Pending bookings whose rebroadcast time has come"""
        return (
            db.query(Booking)
            .filter(
                Booking.status == BookingStatus.PENDING.value,
                Booking.next_dispatch_at.isnot(None),
                Booking.next_dispatch_at <= now,
            )
            .order_by(Booking.next_dispatch_at)
            .limit(limit)
            .all()
        )
