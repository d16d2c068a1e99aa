"""Professional repository - location, availability and proximity queries"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import RESCHEDULE_SLOT_MINUTES
from ...models import Booking, Professional, ProfessionalLocation, utcnow
from ...shared.exceptions import ConflictError, NotFoundError, ValidationError
from ...shared.geo import GeoPoint, bounding_box, is_valid_latitude, is_valid_longitude, within
from ...shared.validators import normalize_specializations, validate_phone
from ..bookings.state_machine import OPEN_STATUSES

logger = logging.getLogger(__name__)

LOCATION_HISTORY_LIMIT = 100
VERIFIED = "verified"
ASSIGNMENT_PHASES = ("assigned", "en_route", "arrived", "started")


@dataclass(frozen=True)
class Assignment:
    booking_id: str
    phase: str = "assigned"


@dataclass(frozen=True)
class Candidate:
    professional: Professional
    distance_km: float


def professional_point(professional: Professional) -> Optional[GeoPoint]:
    if not professional.has_location:
        return None
    return GeoPoint(longitude=professional.longitude, latitude=professional.latitude)


class ProfessionalRegistry:
    """Repository for professional database operations"""

    @staticmethod
    def create(
        db: Session,
        name: str,
        specializations: Iterable[str],
        verification_status: str = "registration_pending",
        phone: Optional[str] = None,
        rating_average: float = 0,
    ) -> Professional:
        try:
            phone = validate_phone(phone)
        except ValueError as e:
            raise ValidationError(str(e))

        professional = Professional(
            name=name,
            phone=phone,
            specializations=normalize_specializations(specializations),
            verification_status=verification_status,
            rating_average=rating_average,
            is_available=True,
            is_online=False,
        )
        db.add(professional)
        db.flush()
        return professional

    @staticmethod
    def get(db: Session, professional_id: str) -> Optional[Professional]:
        return db.query(Professional).filter(Professional.id == professional_id).first()

    @staticmethod
    def require(db: Session, professional_id: str) -> Professional:
        professional = ProfessionalRegistry.get(db, professional_id)
        if not professional:
            raise NotFoundError("Professional not found")
        return professional

    @staticmethod
    def update_location(
        db: Session,
        professional_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        accepting_jobs: Optional[bool] = None,
        timestamp: Optional[datetime] = None,
        source: str = "gps",
    ) -> Professional:
        """
        Record a location ping. Does not commit.

        Sets the current location, marks the professional online and prepends a
        history entry, evicting everything past the newest 100. A ping whose
        timestamp is already in the history does not add another entry, and a
        ping older than the stored location is recorded in history only.

        Raises:
            ValidationError: If latitude/longitude are missing or out of range
            NotFoundError: If the professional does not exist
        """
        if not is_valid_latitude(latitude) or not is_valid_longitude(longitude):
            raise ValidationError(
                "Latitude must be between -90 and 90, longitude between -180 and 180"
            )

        professional = ProfessionalRegistry.require(db, professional_id)
        recorded_at = timestamp or utcnow()

        location = {
            "latitude": latitude,
            "longitude": longitude,
            "location_accuracy": accuracy,
            "location_heading": heading,
            "location_speed": speed,
            "location_timestamp": recorded_at,
        }
        presence = {"is_online": True, "last_seen": utcnow()}
        if accepting_jobs is not None:
            presence["accepting_jobs"] = accepting_jobs

        # Column-level updates; assignment/availability columns are never touched here.
        # A ping older than the stored fix only lands in history.
        moved = (
            db.query(Professional)
            .filter(
                Professional.id == professional_id,
                or_(
                    Professional.location_timestamp.is_(None),
                    Professional.location_timestamp <= recorded_at,
                ),
            )
            .update(location, synchronize_session=False)
        )
        if not moved:
            logger.debug(f"Out-of-order ping for professional {professional_id} kept in history only")
        db.query(Professional).filter(Professional.id == professional_id).update(
            presence, synchronize_session=False
        )

        duplicate = (
            db.query(ProfessionalLocation.id)
            .filter(
                ProfessionalLocation.professional_id == professional_id,
                ProfessionalLocation.recorded_at == recorded_at,
            )
            .first()
        )
        if duplicate is None:
            db.add(
                ProfessionalLocation(
                    professional_id=professional_id,
                    latitude=latitude,
                    longitude=longitude,
                    accuracy=accuracy,
                    heading=heading,
                    speed=speed,
                    source=source,
                    recorded_at=recorded_at,
                )
            )
            db.flush()
            ProfessionalRegistry._trim_history(db, professional_id)

        db.refresh(professional)
        return professional

    @staticmethod
    def _trim_history(db: Session, professional_id: str) -> int:
        """Drop history rows beyond the newest LOCATION_HISTORY_LIMIT"""
        stale_ids = [
            row.id
            for row in db.query(ProfessionalLocation.id)
            .filter(ProfessionalLocation.professional_id == professional_id)
            .order_by(ProfessionalLocation.recorded_at.desc(), ProfessionalLocation.id.desc())
            .offset(LOCATION_HISTORY_LIMIT)
            .all()
        ]
        if not stale_ids:
            return 0
        return (
            db.query(ProfessionalLocation)
            .filter(ProfessionalLocation.id.in_(stale_ids))
            .delete(synchronize_session=False)
        )

    @staticmethod
    def location_history(db: Session, professional_id: str, limit: int = LOCATION_HISTORY_LIMIT):
        """History entries, newest first"""
        return (
            db.query(ProfessionalLocation)
            .filter(ProfessionalLocation.professional_id == professional_id)
            .order_by(ProfessionalLocation.recorded_at.desc(), ProfessionalLocation.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def find_candidates(
        db: Session,
        capabilities: Optional[Iterable[str]],
        origin: GeoPoint,
        max_distance_meters: float,
        limit: Optional[int],
        require_available: bool = True,
    ) -> List[Candidate]:
        """
        Verified, available, online professionals near origin.

        Specializations must intersect capabilities (no filter when capabilities
        is None). Ordered by ascending haversine distance, ties by descending
        rating, truncated to limit (None = all).
        """
        min_lat, max_lat, min_lon, max_lon = bounding_box(origin, max_distance_meters)

        query = db.query(Professional).filter(
            Professional.verification_status == VERIFIED,
            Professional.is_online.is_(True),
            Professional.accepting_jobs.is_(True),
            Professional.latitude.isnot(None),
            Professional.longitude.isnot(None),
            Professional.latitude.between(min_lat, max_lat),
            Professional.longitude.between(min_lon, max_lon),
        )
        if require_available:
            query = query.filter(Professional.is_available.is_(True))

        wanted = None
        if capabilities is not None:
            wanted = set(normalize_specializations(capabilities))

        def matches(professional: Professional) -> bool:
            if wanted is None:
                return True
            return bool(wanted.intersection(professional.specializations or []))

        ranked = within(
            origin,
            max_distance_meters,
            query.all(),
            locate=professional_point,
            filter=matches,
            tiebreak=lambda p: p.rating_average or 0.0,
            limit=limit,
        )
        return [Candidate(professional=p, distance_km=d) for p, d in ranked]

    @staticmethod
    def set_assignment(
        db: Session,
        professional_id: str,
        assignment: Optional[Assignment],
        expected_booking_id: Optional[str] = None,
    ) -> Professional:
        """
        Attach or clear the professional's current assignment. Does not commit.

        Attaching is a conditional write that only succeeds while the
        professional is available and unassigned; clearing sets the
        professional available again. When expected_booking_id is given, the
        clear only applies if that booking is the current assignment.

        Raises:
            NotFoundError: If the professional does not exist
            ConflictError: If the professional already holds an assignment
        """
        query = db.query(Professional).filter(Professional.id == professional_id)

        if assignment is not None:
            updated = query.filter(
                Professional.is_available.is_(True),
                Professional.current_booking_id.is_(None),
            ).update(
                {
                    "is_available": False,
                    "current_booking_id": assignment.booking_id,
                    "assignment_phase": assignment.phase,
                },
                synchronize_session=False,
            )
        else:
            if expected_booking_id is not None:
                query = query.filter(Professional.current_booking_id == expected_booking_id)
            updated = query.update(
                {"is_available": True, "current_booking_id": None, "assignment_phase": None},
                synchronize_session=False,
            )

        professional = ProfessionalRegistry.require(db, professional_id)
        if not updated:
            if assignment is not None:
                raise ConflictError("Professional not available")
            logger.warning(
                f"⚠️ Professional {professional_id} assignment already cleared "
                f"(expected booking {expected_booking_id})"
            )
        db.refresh(professional)
        return professional

    @staticmethod
    def set_phase(db: Session, professional_id: str, booking_id: str, phase: str) -> bool:
        if phase not in ASSIGNMENT_PHASES:
            raise ValidationError(f"Phase must be one of: {', '.join(ASSIGNMENT_PHASES)}")
        updated = (
            db.query(Professional)
            .filter(
                Professional.id == professional_id,
                Professional.current_booking_id == booking_id,
            )
            .update({"assignment_phase": phase}, synchronize_session=False)
        )
        return bool(updated)

    @staticmethod
    def is_available_at(
        db: Session,
        professional_id: str,
        when: datetime,
        exclude_booking_id: Optional[str] = None,
        slot_minutes: int = RESCHEDULE_SLOT_MINUTES,
    ) -> bool:
        """
        True if the professional is verified and has no other open booking
        scheduled within slot_minutes of when.
        """
        professional = ProfessionalRegistry.require(db, professional_id)
        if professional.verification_status != VERIFIED:
            return False

        window = timedelta(minutes=slot_minutes)
        query = db.query(Booking.id).filter(
            Booking.professional_id == professional_id,
            Booking.status.in_([s.value for s in OPEN_STATUSES]),
            Booking.scheduled_date > when - window,
            Booking.scheduled_date < when + window,
        )
        if exclude_booking_id is not None:
            query = query.filter(Booking.id != exclude_booking_id)
        return query.first() is None

    @staticmethod
    def mark_offline(db: Session, professional_id: str) -> Professional:
        """Connection teardown: the professional stops receiving dispatches"""
        professional = ProfessionalRegistry.require(db, professional_id)
        db.query(Professional).filter(Professional.id == professional_id).update(
            {"is_online": False, "last_seen": utcnow()}, synchronize_session=False
        )
        db.refresh(professional)
        return professional
