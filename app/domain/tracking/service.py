"""Tracking service - Business logic for live location and ETA"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import PROFESSIONAL, Actor
from ...cache import cache_professional_location, clear_professional_location, get_cached_location
from ...config import AVERAGE_SPEED_KMH
from ...database import transaction
from ...models import Booking, Professional, utcnow
from ...services.realtime import RealtimeBus, booking_room, realtime_bus, user_room
from ...shared.exceptions import ConflictError
from ...shared.geo import GeoPoint, haversine_km, travel_minutes
from ..bookings.repository import BookingStore
from ..bookings.service import DispatchCoordinator
from ..bookings.state_machine import ACTIVE_ASSIGNMENT_STATUSES
from ..professionals.repository import ProfessionalRegistry

logger = logging.getLogger(__name__)


def estimate_eta_minutes(
    professional_lon: float, professional_lat: float, destination_lon: float, destination_lat: float
) -> int:
    """Straight-line ETA at the configured average speed, in whole minutes"""
    distance = haversine_km(
        GeoPoint(longitude=professional_lon, latitude=professional_lat),
        GeoPoint(longitude=destination_lon, latitude=destination_lat),
    )
    return travel_minutes(distance, AVERAGE_SPEED_KMH)


class TrackingService:
    """Service layer for location pings and booking tracking"""

    def __init__(
        self,
        db: Session,
        realtime: Optional[RealtimeBus] = None,
        coordinator: Optional[DispatchCoordinator] = None,
    ):
        self.db = db
        self.realtime = realtime or realtime_bus
        self.coordinator = coordinator or DispatchCoordinator(db, realtime=self.realtime)
        self.store = BookingStore()
        self.registry = ProfessionalRegistry()

    def ingest_location(
        self,
        professional_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        booking_id: Optional[str] = None,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        accepting_jobs: Optional[bool] = None,
        timestamp: Optional[datetime] = None,
    ) -> dict:
        """
        Record a location ping, refresh the location cache and, for a booking
        this professional is working, update its tracking snapshot and ETA.

        Raises:
            ValidationError: Coordinates out of range (nothing written)
            NotFoundError: Unknown professional
        """
        with transaction(self.db):
            professional = self.registry.update_location(
                self.db,
                professional_id,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
                heading=heading,
                speed=speed,
                accepting_jobs=accepting_jobs,
                timestamp=timestamp,
            )

        coordinates = [professional.longitude, professional.latitude]
        cache_professional_location(
            professional_id, coordinates, professional.location_timestamp.isoformat()
        )

        snapshot = {
            "professionalId": professional_id,
            "coordinates": coordinates,
            "isOnline": professional.is_online,
            "acceptingJobs": professional.accepting_jobs,
            "timestamp": professional.location_timestamp,
            "bookingId": None,
            "etaMinutes": None,
        }

        if booking_id:
            eta = self._update_booking_tracking(booking_id, professional, coordinates)
            if eta is not None:
                snapshot["bookingId"] = booking_id
                snapshot["etaMinutes"] = eta

        return snapshot

    def _update_booking_tracking(
        self, booking_id: str, professional: Professional, coordinates: list
    ) -> Optional[int]:
        booking = self.store.get(self.db, booking_id)
        if not booking or booking.professional_id != professional.id:
            logger.warning(
                f"⚠️ Professional {professional.id} sent a ping for booking {booking_id} they are not assigned to"
            )
            self.db.rollback()
            return None

        eta = estimate_eta_minutes(coordinates[0], coordinates[1], booking.longitude, booking.latitude)
        with transaction(self.db):
            tracked = self.store.update_tracking(
                self.db,
                booking_id,
                {
                    "tracking_longitude": coordinates[0],
                    "tracking_latitude": coordinates[1],
                    "tracking_updated_at": utcnow(),
                    "eta_minutes": eta,
                },
            )
        if not tracked:
            logger.debug(f"Booking {booking_id} is no longer tracked, ping not attached")
            return None

        self.realtime.emit(
            booking_room(booking_id),
            "professional_location",
            {"bookingId": booking_id, "coordinates": coordinates, "etaMinutes": eta},
        )
        return eta

    def get_tracking_info(self, booking_id: str) -> dict:
        """
        Current tracking view of a booking.

        Prefers the cached live location, then the booking snapshot, then the
        registry. ETA is None without an assigned professional or a known location.
        """
        booking = self.store.require(self.db, booking_id)
        location = self._professional_location(booking)

        eta = None
        if location is not None:
            eta = estimate_eta_minutes(
                location["coordinates"][0], location["coordinates"][1], booking.longitude, booking.latitude
            )

        phase = None
        if booking.professional_id:
            professional = self.registry.get(self.db, booking.professional_id)
            if professional and professional.current_booking_id == booking.id:
                phase = professional.assignment_phase

        return {
            "bookingId": booking.id,
            "status": booking.status,
            "professionalLocation": location,
            "destination": booking.destination,
            "etaMinutes": eta,
            "phase": phase,
            "updatedAt": booking.tracking_updated_at,
        }

    def _professional_location(self, booking: Booking) -> Optional[dict]:
        if not booking.professional_id or booking.status not in {
            s.value for s in ACTIVE_ASSIGNMENT_STATUSES
        }:
            return None

        cached = get_cached_location(booking.professional_id)
        if cached and cached.get("coordinates"):
            return {"type": "Point", "coordinates": cached["coordinates"], "timestamp": cached.get("timestamp")}

        if booking.tracking_longitude is not None and booking.tracking_latitude is not None:
            return {
                "type": "Point",
                "coordinates": [booking.tracking_longitude, booking.tracking_latitude],
                "timestamp": booking.tracking_updated_at.isoformat() if booking.tracking_updated_at else None,
            }

        professional = self.registry.get(self.db, booking.professional_id)
        if professional and professional.has_location:
            return {
                "type": "Point",
                "coordinates": [professional.longitude, professional.latitude],
                "timestamp": (
                    professional.location_timestamp.isoformat() if professional.location_timestamp else None
                ),
            }
        return None

    def report_phase(self, booking_id: str, professional_id: str, phase: str) -> Booking:
        """Professional phase report; status changes are owned by the dispatch coordinator"""
        return self.coordinator.advance_phase(booking_id, professional_id, phase)

    def relay_message(self, booking_id: str, sender: Actor, message: str) -> dict:
        """
        Forward a chat message between the booking's customer and professional.

        A professional's message goes to the customer; anyone else's goes to
        the assigned professional. Messages are relayed live only, never stored.

        Raises:
            NotFoundError: Unknown booking
            ForbiddenError: Sender is not a party to the booking
            ConflictError: No professional assigned yet
        """
        booking = self.store.require(self.db, booking_id)
        DispatchCoordinator.ensure_party(booking, sender)
        recipient_id = booking.customer_id if sender.role == PROFESSIONAL else booking.professional_id
        self.db.rollback()
        if not recipient_id:
            raise ConflictError("No professional assigned yet")

        sent_at = utcnow()
        delivered = self.realtime.emit(
            user_room(recipient_id),
            "new_message",
            {"bookingId": booking_id, "message": message, "sender": sender.id, "timestamp": sent_at},
        )
        logger.debug(f"💬 Message on booking {booking_id} relayed from {sender.id} to {recipient_id}")
        return {
            "bookingId": booking_id,
            "recipientId": recipient_id,
            "sender": sender.id,
            "message": message,
            "timestamp": sent_at,
            "delivered": delivered,
        }

    def disconnect(self, professional_id: str) -> Professional:
        """Connection teardown: offline in the registry, cached location dropped"""
        with transaction(self.db):
            professional = self.registry.mark_offline(self.db, professional_id)
        clear_professional_location(professional_id)
        logger.info(f"🔌 Professional {professional_id} disconnected")
        return professional
