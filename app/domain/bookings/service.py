"""
Dispatch coordinator - booking lifecycle orchestration

Every mutating operation runs in exactly one database transaction. Booking
status writes go through BookingStore.transition (compare-and-set on status and
version) and professional assignment through ProfessionalRegistry.set_assignment
(compare-and-set on availability), so concurrent callers never both succeed.
Notifications are written to the outbox inside the same transaction; pushes
and realtime events happen only after commit and never fail the operation.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ...auth import ADMIN, CUSTOMER, PROFESSIONAL, Actor
from ...config import DISPATCH_TIMEOUT_SECONDS
from ...database import SessionLocal, transaction
from ...models import Booking, utcnow
from ...services.geocoding_service import GeocodingProvider, geocoding_provider
from ...services.notification_service import (
    BOOKING_ACCEPTED,
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_REJECTED,
    BOOKING_REQUEST,
    BOOKING_RESCHEDULED,
    BOOKING_STATUS_UPDATE,
    EMERGENCY_BOOKING,
    NotificationGateway,
    deliver_pending,
    enqueue_notification,
    notification_gateway,
)
from ...services.realtime import RealtimeBus, booking_room, realtime_bus, user_room
from ...shared.exceptions import (
    ConflictError,
    DispatchError,
    DispatchTimeoutError,
    ForbiddenError,
    ValidationError,
)
from ...shared.validators import to_naive_utc
from ..catalog.repository import ServiceRepository
from ..matching.engine import MatchingEngine, RetryPolicy
from ..professionals.repository import Assignment, Candidate, ProfessionalRegistry
from .repository import BookingStore
from .schemas import BookingCreate
from .state_machine import (
    PHASE_EVENTS,
    RESCHEDULABLE_STATUSES,
    BookingEvent,
    BookingStatus,
    allowed_from,
    conflict_message,
    target,
)

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No professional accepted the booking"

PHASE_TIMESTAMPS = {
    "en_route": "en_route_at",
    "arrived": "arrived_at",
    "started": "started_at",
}


@dataclass
class DispatchResult:
    booking_id: str
    status: str
    notified_count: int = 0
    attempt: int = 0
    provisional: bool = False


def booking_payload(booking: Booking, message: str, **extra) -> dict:
    payload = {
        "bookingId": booking.id,
        "status": booking.status,
        "scheduledDate": booking.scheduled_date.isoformat() if booking.scheduled_date else None,
        "message": message,
    }
    payload.update(extra)
    return payload


class DispatchCoordinator:
    """Service layer for booking dispatch and lifecycle"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[NotificationGateway] = None,
        realtime: Optional[RealtimeBus] = None,
        geocoder: Optional[GeocodingProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.db = db
        self.gateway = gateway or notification_gateway
        self.realtime = realtime or realtime_bus
        self.geocoder = geocoder or geocoding_provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.session_factory = session_factory
        self.store = BookingStore()
        self.registry = ProfessionalRegistry()
        self.matching = MatchingEngine(db, self.retry_policy)

    def with_session(self, db: Session) -> "DispatchCoordinator":
        """Same collaborators, different session (for work on another thread)"""
        return DispatchCoordinator(
            db,
            gateway=self.gateway,
            realtime=self.realtime,
            geocoder=self.geocoder,
            retry_policy=self.retry_policy,
            session_factory=self.session_factory,
        )

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    @staticmethod
    def ensure_party(booking: Booking, actor: Optional[Actor], roles=(CUSTOMER, PROFESSIONAL)) -> None:
        """The actor must be the booking's customer or its professional (None = system)"""
        if actor is None or actor.role == ADMIN:
            return
        if CUSTOMER in roles and actor.role == CUSTOMER and booking.customer_id == actor.id:
            return
        if PROFESSIONAL in roles and actor.role == PROFESSIONAL and booking.professional_id == actor.id:
            return
        logger.warning(f"⚠️ {actor.role} {actor.id} denied access to booking {booking.id}")
        raise ForbiddenError("Not allowed to access this booking")

    # ------------------------------------------------------------------
    # Creation and dispatch
    # ------------------------------------------------------------------

    async def request_booking(
        self, customer_id: str, data: BookingCreate, is_emergency: bool = False
    ) -> Booking:
        """
        Create a pending booking. Matching runs afterwards (see dispatch_in_background).

        Raises:
            ValidationError: Missing service, destination or scheduled date
            NotFoundError: Unknown or inactive service
        """
        location = data.location
        has_destination = location is not None and bool(location.coordinates or location.address)
        if not data.serviceId or not has_destination or data.scheduledDate is None:
            raise ValidationError("Missing required fields")

        service = ServiceRepository.require_active(self.db, data.serviceId)

        coordinates = location.coordinates
        address = location.address
        if not coordinates:
            # No transaction stays open across the network lookup
            self.db.rollback()
            geocoded = await self.geocoder.geocode(address)
            if geocoded:
                coordinates = geocoded["coordinates"]
                address = geocoded["formattedAddress"]
            else:
                logger.warning(f"⚠️ Could not geocode address for customer {customer_id}")

        with transaction(self.db):
            booking = self.store.create(
                self.db,
                customer_id=customer_id,
                service=service,
                coordinates=coordinates,
                scheduled_date=to_naive_utc(data.scheduledDate),
                address=address,
                is_emergency=is_emergency,
            )

        logger.info(
            f"✅ Booking {booking.id} created for customer {customer_id} "
            f"(service={service.category}, emergency={is_emergency})"
        )
        return booking

    def dispatch_booking(self, booking_id: str) -> DispatchResult:
        """
        One matching attempt for a pending booking.

        Notifies every ranked candidate through the outbox and schedules the
        next attempt. A booking whose attempts are used up without anyone
        accepting is rejected and its customer notified. Bookings that are no
        longer pending are left alone.
        """
        candidates: List[Candidate] = []
        try:
            with transaction(self.db):
                booking = self.store.require(self.db, booking_id)
                if booking.status != BookingStatus.PENDING.value:
                    logger.info(f"⏭️ Booking {booking_id} is {booking.status}, nothing to dispatch")
                    return DispatchResult(booking.id, booking.status, attempt=booking.dispatch_attempts)

                if self.retry_policy.exhausted(booking.dispatch_attempts):
                    booking = self._reject_unmatched(booking, booking.dispatch_attempts)
                    return DispatchResult(booking.id, booking.status, attempt=booking.dispatch_attempts)

                candidates = self.matching.rank(booking)
                attempt = booking.dispatch_attempts + 1

                if not candidates and self.retry_policy.exhausted(attempt):
                    booking = self._reject_unmatched(booking, attempt)
                    return DispatchResult(booking.id, booking.status, attempt=attempt)

                event_type = EMERGENCY_BOOKING if booking.is_emergency else BOOKING_REQUEST
                for candidate in candidates:
                    enqueue_notification(
                        self.db,
                        candidate.professional.id,
                        event_type,
                        booking_payload(
                            booking,
                            "Emergency request near you" if booking.is_emergency else "New booking request",
                            serviceName=booking.service.name,
                            category=booking.service.category,
                            distanceKm=round(candidate.distance_km, 2),
                            destination=booking.destination,
                        ),
                        priority=booking.priority,
                        booking_id=booking.id,
                    )

                notified_ids = [c.professional.id for c in candidates]
                next_at = self.retry_policy.next_attempt_at(attempt, utcnow())

                def record_attempt(b: Booking) -> dict:
                    previous = list(b.notified_professional_ids or [])
                    return {
                        "dispatch_attempts": attempt,
                        "next_dispatch_at": next_at,
                        "notified_professional_ids": previous
                        + [pid for pid in notified_ids if pid not in previous],
                    }

                booking = self.store.transition(
                    self.db,
                    booking_id,
                    [BookingStatus.PENDING.value],
                    None,
                    mutation=record_attempt,
                    conflict_message=conflict_message(BookingEvent.ACCEPT),
                )
        except ConflictError:
            # Accepted or cancelled while we were matching; the outbox rows were rolled back
            booking = self.store.require(self.db, booking_id)
            logger.info(f"🔀 Booking {booking_id} changed during dispatch, now {booking.status}")
            return DispatchResult(booking.id, booking.status, attempt=booking.dispatch_attempts)

        if candidates:
            logger.info(
                f"📣 Booking {booking_id} attempt {attempt}: notified {len(candidates)} professional(s), "
                f"next attempt at {next_at.isoformat()}"
            )
        else:
            logger.info(f"🕳️ Booking {booking_id} attempt {attempt}: no candidates, retry at {next_at.isoformat()}")

        realtime_event = "emergency_booking" if booking.is_emergency else "new_booking_request"
        for candidate in candidates:
            self.realtime.emit(
                user_room(candidate.professional.id),
                realtime_event,
                {"bookingId": booking.id, "distanceKm": round(candidate.distance_km, 2)},
            )
        self.deliver_notifications(booking.id)

        return DispatchResult(
            booking.id, booking.status, notified_count=len(candidates), attempt=attempt
        )

    def _reject_unmatched(self, booking: Booking, attempts: int) -> Booking:
        """Reject a booking nobody accepted. Runs inside the caller's transaction."""
        booking = self.store.transition(
            self.db,
            booking.id,
            allowed_from(BookingEvent.REJECT),
            target(BookingEvent.REJECT),
            mutation=lambda b: {
                "dispatch_attempts": attempts,
                "next_dispatch_at": None,
                "rejection_reason": NO_MATCH_REASON,
            },
            conflict_message=conflict_message(BookingEvent.REJECT),
        )
        enqueue_notification(
            self.db,
            booking.customer_id,
            BOOKING_REJECTED,
            booking_payload(booking, "No professional is available for your booking"),
            booking_id=booking.id,
        )
        logger.info(f"🚫 Booking {booking.id} rejected after {attempts} dispatch attempt(s)")
        return booking

    def _dispatch_in_new_session(self, booking_id: str) -> DispatchResult:
        db = self.session_factory()
        try:
            return self.with_session(db).dispatch_booking(booking_id)
        finally:
            db.close()

    async def _run_with_deadline(self, booking_id: str, timeout: float) -> DispatchResult:
        """
        Raises:
            DispatchTimeoutError: The deadline passed; the worker thread keeps going
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._dispatch_in_new_session, booking_id), timeout
            )
        except asyncio.TimeoutError as e:
            raise DispatchTimeoutError(f"Dispatch of booking {booking_id} exceeded {timeout}s") from e

    async def dispatch_with_deadline(
        self, booking_id: str, timeout: float = DISPATCH_TIMEOUT_SECONDS
    ) -> DispatchResult:
        """
        Dispatch on a worker thread, waiting at most timeout seconds.

        Past the deadline the caller gets a provisional result; the thread still
        finishes its writes and the customer learns the outcome by notification.
        """
        try:
            return await self._run_with_deadline(booking_id, timeout)
        except DispatchTimeoutError as e:
            logger.warning(f"⏱️ {e.message}; returning provisional result")
            return DispatchResult(booking_id, BookingStatus.PENDING.value, provisional=True)

    async def dispatch_in_background(self, booking_id: str) -> None:
        """BackgroundTasks entry point; errors are logged, never raised"""
        try:
            result = await self.dispatch_with_deadline(booking_id)
            logger.info(
                f"📦 Background dispatch of {booking_id}: status={result.status}, "
                f"notified={result.notified_count}, provisional={result.provisional}"
            )
        except Exception as e:
            logger.error(f"❌ Background dispatch of booking {booking_id} failed: {e}")

    async def handle_emergency(self, customer_id: str, data: BookingCreate):
        """
        Create an emergency booking and broadcast it to everyone eligible within 5km.

        The first professional whose accept_booking succeeds wins.

        Returns:
            (booking, DispatchResult)
        """
        booking = await self.request_booking(customer_id, data, is_emergency=True)
        logger.warning(f"🚨 Emergency booking {booking.id} for customer {customer_id}")
        result = await self.dispatch_with_deadline(booking.id)
        return booking, result

    def rebroadcast_due(self, now: Optional[datetime] = None, limit: int = 50) -> List[DispatchResult]:
        """Run another dispatch attempt for pending bookings whose retry time has come"""
        due_ids = [b.id for b in self.store.due_for_dispatch(self.db, now or utcnow(), limit)]
        self.db.rollback()  # end the read transaction before dispatching

        results = []
        for booking_id in due_ids:
            try:
                results.append(self.dispatch_booking(booking_id))
            except DispatchError as e:
                logger.error(f"❌ Rebroadcast of booking {booking_id} failed: {e.message}")
        if due_ids:
            logger.info(f"🔁 Rebroadcast {len(results)}/{len(due_ids)} due booking(s)")
        return results

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def accept_booking(self, booking_id: str, professional_id: str) -> Booking:
        """
        Professional accepts a pending booking.

        The booking write and the professional's assignment commit together or
        not at all.

        Raises:
            NotFoundError: Unknown booking or professional
            ConflictError: "Booking already processed" / "Professional not available"
        """
        if not booking_id:
            raise ValidationError("Missing required fields")

        with transaction(self.db):
            professional = self.registry.require(self.db, professional_id)
            if professional.verification_status != "verified":
                raise ConflictError("Professional not available")

            now = utcnow()
            booking = self.store.transition(
                self.db,
                booking_id,
                allowed_from(BookingEvent.ACCEPT),
                target(BookingEvent.ACCEPT),
                mutation=lambda b: {
                    "professional_id": professional_id,
                    "accepted_at": now,
                    "next_dispatch_at": None,
                },
                conflict_message=conflict_message(BookingEvent.ACCEPT),
            )
            self.registry.set_assignment(self.db, professional_id, Assignment(booking_id=booking.id))
            enqueue_notification(
                self.db,
                booking.customer_id,
                BOOKING_ACCEPTED,
                booking_payload(
                    booking,
                    f"{professional.name} accepted your booking",
                    professionalId=professional.id,
                    professionalName=professional.name,
                ),
                priority=booking.priority,
                booking_id=booking.id,
            )

        logger.info(f"🤝 Booking {booking_id} accepted by professional {professional_id}")
        self._publish_status(booking)
        return booking

    def complete_booking(
        self, booking_id: str, supplied_code: Optional[str], actor: Optional[Actor] = None
    ) -> Booking:
        """
        Complete a booking against its 6-digit verification code.

        Raises:
            NotFoundError: Unknown booking
            ConflictError: Wrong status, or "Invalid verification code" (nothing written)
        """
        with transaction(self.db):
            booking = self.store.require(self.db, booking_id)
            self.ensure_party(booking, actor)

            if booking.status not in allowed_from(BookingEvent.COMPLETE):
                raise ConflictError(conflict_message(BookingEvent.COMPLETE))
            if supplied_code is None or not secrets.compare_digest(
                str(supplied_code).encode(), booking.verification_code.encode()
            ):
                logger.warning(f"⚠️ Invalid verification code for booking {booking_id}")
                raise ConflictError("Invalid verification code")

            booking = self.store.transition(
                self.db,
                booking_id,
                allowed_from(BookingEvent.COMPLETE),
                target(BookingEvent.COMPLETE),
                mutation=lambda b: {"completed_at": utcnow()},
                conflict_message=conflict_message(BookingEvent.COMPLETE),
            )
            if booking.professional_id:
                self.registry.set_assignment(
                    self.db, booking.professional_id, None, expected_booking_id=booking.id
                )

            payload = booking_payload(booking, "Booking completed", totalAmount=booking.total_amount)
            for recipient in filter(None, (booking.customer_id, booking.professional_id)):
                enqueue_notification(
                    self.db, recipient, BOOKING_COMPLETED, payload, booking_id=booking.id
                )

        logger.info(f"🏁 Booking {booking_id} completed")
        self._publish_status(booking)
        return booking

    def reschedule_booking(
        self,
        booking_id: str,
        new_date: Optional[datetime],
        reason: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Booking:
        """
        Move a pending or accepted booking to a new time.

        Raises:
            ValidationError: Missing or past date
            ConflictError: Not reschedulable, or the assigned professional is busy then
        """
        new_date = to_naive_utc(new_date)
        if new_date is None:
            raise ValidationError("Missing required fields")
        if new_date <= utcnow():
            raise ValidationError("New date must be in the future")

        with transaction(self.db):
            booking = self.store.require(self.db, booking_id)
            self.ensure_party(booking, actor)

            rescheduable = [s.value for s in RESCHEDULABLE_STATUSES]
            if booking.status not in rescheduable:
                raise ConflictError("Booking can no longer be rescheduled")
            if booking.professional_id and not self.registry.is_available_at(
                self.db, booking.professional_id, new_date, exclude_booking_id=booking.id
            ):
                raise ConflictError("Professional not available at requested time")

            entry = {
                "oldDate": booking.scheduled_date.isoformat() if booking.scheduled_date else None,
                "newDate": new_date.isoformat(),
                "reason": reason,
                "requestedBy": actor.id if actor else None,
                "requestedAt": utcnow().isoformat(),
            }
            booking = self.store.transition(
                self.db,
                booking_id,
                rescheduable,
                None,
                mutation=lambda b: {
                    "scheduled_date": new_date,
                    "rescheduling_history": list(b.rescheduling_history or []) + [entry],
                },
                conflict_message="Booking can no longer be rescheduled",
            )

            payload = booking_payload(booking, "Booking rescheduled", reason=reason)
            for recipient in filter(None, (booking.customer_id, booking.professional_id)):
                enqueue_notification(
                    self.db, recipient, BOOKING_RESCHEDULED, payload, booking_id=booking.id
                )

        logger.info(f"📅 Booking {booking_id} rescheduled to {new_date.isoformat()}")
        self._publish_status(booking)
        return booking

    def cancel_booking(self, booking_id: str, actor: Optional[Actor] = None, reason: Optional[str] = None) -> Booking:
        """
        Customer cancels a booking that is not yet in progress; an assigned
        professional becomes available again.
        """
        with transaction(self.db):
            booking = self.store.require(self.db, booking_id)
            self.ensure_party(booking, actor, roles=(CUSTOMER,))

            now = utcnow()
            booking = self.store.transition(
                self.db,
                booking_id,
                allowed_from(BookingEvent.CANCEL),
                target(BookingEvent.CANCEL),
                mutation=lambda b: {
                    "cancelled_at": now,
                    "cancellation_reason": reason,
                    "next_dispatch_at": None,
                },
                conflict_message=conflict_message(BookingEvent.CANCEL),
            )
            if booking.professional_id:
                self.registry.set_assignment(
                    self.db, booking.professional_id, None, expected_booking_id=booking.id
                )
                enqueue_notification(
                    self.db,
                    booking.professional_id,
                    BOOKING_CANCELLED,
                    booking_payload(booking, "Booking cancelled by the customer", reason=reason),
                    booking_id=booking.id,
                )

        logger.info(f"🛑 Booking {booking_id} cancelled")
        self._publish_status(booking)
        return booking

    def advance_phase(self, booking_id: str, professional_id: str, phase: str) -> Booking:
        """
        Apply a professional-reported phase (en_route, arrived, started).

        Raises:
            ValidationError: Unknown phase
            ForbiddenError: The booking is not assigned to this professional
            ConflictError: The phase is not allowed from the current status
        """
        event = PHASE_EVENTS.get(phase)
        if event is None:
            raise ValidationError(f"Phase must be one of: {', '.join(PHASE_EVENTS)}")

        with transaction(self.db):
            booking = self.store.require(self.db, booking_id)
            if booking.professional_id != professional_id:
                raise ForbiddenError("Booking is not assigned to this professional")

            stamp = PHASE_TIMESTAMPS[phase]
            now = utcnow()
            booking = self.store.transition(
                self.db,
                booking_id,
                allowed_from(event),
                target(event),
                mutation=lambda b: {stamp: now},
                conflict_message=f"Cannot mark booking as {phase} in its current state",
            )
            self.registry.set_phase(self.db, professional_id, booking_id, phase)
            enqueue_notification(
                self.db,
                booking.customer_id,
                BOOKING_STATUS_UPDATE,
                booking_payload(booking, f"Your professional is {phase.replace('_', ' ')}", phase=phase),
                priority=booking.priority,
                booking_id=booking.id,
            )

        logger.info(f"🚚 Booking {booking_id} phase {phase} → status {booking.status}")
        self._publish_status(booking, phase=phase)
        return booking

    # ------------------------------------------------------------------
    # After-commit side effects
    # ------------------------------------------------------------------

    def _publish_status(self, booking: Booking, phase: Optional[str] = None) -> None:
        payload = {"bookingId": booking.id, "status": booking.status, "version": booking.version}
        if phase:
            payload["phase"] = phase
        self.realtime.emit(booking_room(booking.id), "booking_status_update", payload)

    def deliver_notifications(self, booking_id: str) -> dict:
        """Push this booking's pending outbox events now; the worker retries failures"""
        try:
            return deliver_pending(self.db, gateway=self.gateway, booking_id=booking_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Notification delivery for booking {booking_id} failed: {e}")
            return {"delivered": 0, "retried": 0, "failed": 0}


def deliver_booking_notifications(booking_id: str) -> None:
    """BackgroundTasks entry point: deliver with a fresh session after the request committed"""
    db = SessionLocal()
    try:
        DispatchCoordinator(db).deliver_notifications(booking_id)
    finally:
        db.close()
