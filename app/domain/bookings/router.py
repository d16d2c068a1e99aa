"""Booking router - FastAPI endpoints for booking dispatch and lifecycle"""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from ...auth import CUSTOMER, PROFESSIONAL, Actor, get_current_actor, require_customer, require_professional
from ...database import get_db
from ...models import Booking
from ..tracking.service import TrackingService
from .repository import BookingStore
from .schemas import (
    AcceptBookingRequest,
    AcceptBookingResponse,
    BookingCreate,
    BookingCreatedResponse,
    BookingResponse,
    CancelBookingRequest,
    CompleteBookingRequest,
    EmergencyBookingResponse,
    MessageCreate,
    MessageResponse,
    PhaseUpdateRequest,
    RescheduleBookingRequest,
    ServiceSummary,
    TrackingResponse,
)
from .service import DispatchCoordinator, deliver_booking_notifications

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_dispatch_coordinator(db: Session = Depends(get_db)) -> DispatchCoordinator:
    """Dependency injection for DispatchCoordinator"""
    return DispatchCoordinator(db)


def get_tracking_service(
    db: Session = Depends(get_db),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
) -> TrackingService:
    """Dependency injection for TrackingService"""
    return TrackingService(db, realtime=coordinator.realtime, coordinator=coordinator)


def to_booking_response(booking: Booking, actor: Actor) -> BookingResponse:
    show_code = actor.role == CUSTOMER and booking.customer_id == actor.id
    return BookingResponse(
        id=booking.id,
        customerId=booking.customer_id,
        serviceId=booking.service_id,
        professionalId=booking.professional_id,
        status=booking.status,
        version=booking.version,
        destination=booking.destination,
        address=booking.address,
        scheduledDate=booking.scheduled_date,
        totalAmount=booking.total_amount,
        isEmergency=booking.is_emergency,
        priority=booking.priority,
        verificationCode=booking.verification_code if show_code else None,
        reschedulingHistory=booking.rescheduling_history or [],
        etaMinutes=booking.eta_minutes,
        cancellationReason=booking.cancellation_reason,
        rejectionReason=booking.rejection_reason,
        acceptedAt=booking.accepted_at,
        completedAt=booking.completed_at,
        cancelledAt=booking.cancelled_at,
        createdAt=booking.created_at,
    )


def scope_for(actor: Actor) -> dict:
    """History/active filters for the calling user"""
    if actor.role == PROFESSIONAL:
        return {"professional_id": actor.id}
    if actor.role == CUSTOMER:
        return {"customer_id": actor.id}
    return {}


# ============================================================================
# CREATION
# ============================================================================


@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreate,
    background_tasks: BackgroundTasks,
    customer: Actor = Depends(require_customer),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
):
    """Create a booking; matching professionals are notified in the background"""
    booking = await coordinator.request_booking(customer.id, data)
    background_tasks.add_task(coordinator.dispatch_in_background, booking.id)

    service = booking.service
    return BookingCreatedResponse(
        bookingId=booking.id,
        status=booking.status,
        scheduledDate=booking.scheduled_date,
        totalAmount=booking.total_amount,
        service=ServiceSummary(id=service.id, name=service.name, category=service.category),
    )


@router.post("/emergency", response_model=EmergencyBookingResponse, status_code=status.HTTP_201_CREATED)
async def create_emergency_booking(
    data: BookingCreate,
    customer: Actor = Depends(require_customer),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
):
    """Emergency booking broadcast to every eligible professional within 5km"""
    booking, result = await coordinator.handle_emergency(customer.id, data)
    return EmergencyBookingResponse(
        bookingId=booking.id,
        status=result.status,
        notifiedCount=result.notified_count,
        provisional=result.provisional,
    )


# ============================================================================
# QUERIES
# ============================================================================


@router.get("/active", response_model=Optional[BookingResponse])
async def get_active_booking(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """The caller's current booking, or null"""
    booking = BookingStore.active(db, **scope_for(actor))
    return to_booking_response(booking, actor) if booking else None


@router.get("/history", response_model=List[BookingResponse])
async def get_booking_history(
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """The caller's bookings, newest first"""
    return [to_booking_response(b, actor) for b in BookingStore.history(db, limit=limit, **scope_for(actor))]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    booking = BookingStore.require(db, booking_id)
    DispatchCoordinator.ensure_party(booking, actor)
    return to_booking_response(booking, actor)


@router.get("/{booking_id}/tracking", response_model=TrackingResponse)
async def get_booking_tracking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: TrackingService = Depends(get_tracking_service),
):
    """Professional location, destination and ETA for a booking"""
    booking = BookingStore.require(service.db, booking_id)
    DispatchCoordinator.ensure_party(booking, actor)
    return TrackingResponse(**service.get_tracking_info(booking_id))


@router.post("/{booking_id}/messages", response_model=MessageResponse)
async def send_message(
    booking_id: str,
    data: MessageCreate,
    actor: Actor = Depends(get_current_actor),
    service: TrackingService = Depends(get_tracking_service),
):
    """Chat relay between the booking's customer and professional"""
    return MessageResponse(**service.relay_message(booking_id, actor, data.message))


# ============================================================================
# LIFECYCLE
# ============================================================================


@router.post("/accept", response_model=AcceptBookingResponse)
async def accept_booking(
    data: AcceptBookingRequest,
    background_tasks: BackgroundTasks,
    professional: Actor = Depends(require_professional),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
):
    """First professional to accept wins; everyone after gets "Booking already processed" """
    booking = coordinator.accept_booking(data.bookingId, professional.id)
    background_tasks.add_task(deliver_booking_notifications, booking.id)
    return AcceptBookingResponse(
        bookingId=booking.id, status=booking.status, scheduledDate=booking.scheduled_date
    )


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    data: CompleteBookingRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
):
    booking = coordinator.complete_booking(booking_id, data.verificationCode, actor)
    background_tasks.add_task(deliver_booking_notifications, booking.id)
    return to_booking_response(booking, actor)


@router.post("/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: str,
    data: RescheduleBookingRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
):
    booking = coordinator.reschedule_booking(booking_id, data.newDate, data.reason, actor)
    background_tasks.add_task(deliver_booking_notifications, booking.id)
    return to_booking_response(booking, actor)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    background_tasks: BackgroundTasks,
    customer: Actor = Depends(require_customer),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
):
    booking = coordinator.cancel_booking(booking_id, customer, data.reason)
    background_tasks.add_task(deliver_booking_notifications, booking.id)
    return to_booking_response(booking, customer)


@router.post("/{booking_id}/phase", response_model=BookingResponse)
async def report_phase(
    booking_id: str,
    data: PhaseUpdateRequest,
    background_tasks: BackgroundTasks,
    professional: Actor = Depends(require_professional),
    service: TrackingService = Depends(get_tracking_service),
):
    """en_route, arrived or started"""
    booking = service.report_phase(booking_id, professional.id, data.phase)
    background_tasks.add_task(deliver_booking_notifications, booking.id)
    return to_booking_response(booking, professional)
