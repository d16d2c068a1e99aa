"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import validate_coordinates

MAX_MESSAGE_LENGTH = 2000


class LocationIn(BaseModel):
    """Destination as [longitude, latitude], or a free-text address to geocode"""

    type: Optional[str] = "Point"
    coordinates: Optional[List[float]] = None
    address: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def validate_coordinates(cls, v):
        return validate_coordinates(v)


class BookingCreate(BaseModel):
    """
    Schema for creating a booking

    Every field is optional at the schema level so a missing one is reported
    as "Missing required fields" by the dispatch layer.
    """

    serviceId: Optional[str] = None
    location: Optional[LocationIn] = None
    scheduledDate: Optional[datetime] = None


class AcceptBookingRequest(BaseModel):
    bookingId: Optional[str] = None


class CompleteBookingRequest(BaseModel):
    verificationCode: Optional[str] = None


class RescheduleBookingRequest(BaseModel):
    newDate: Optional[datetime] = None
    reason: Optional[str] = None


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None


class PhaseUpdateRequest(BaseModel):
    phase: str


class MessageCreate(BaseModel):
    message: str

    @field_validator("message")
    @classmethod
    def validate_message(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty")
        if len(v) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
        return v


class MessageResponse(BaseModel):
    bookingId: str
    recipientId: str
    sender: str
    message: str
    timestamp: datetime
    delivered: bool


class ServiceSummary(BaseModel):
    id: str
    name: str
    category: str


class BookingCreatedResponse(BaseModel):
    bookingId: str
    status: str
    scheduledDate: datetime
    totalAmount: float
    service: ServiceSummary


class EmergencyBookingResponse(BaseModel):
    bookingId: str
    status: str
    notifiedCount: int
    provisional: bool


class AcceptBookingResponse(BaseModel):
    bookingId: str
    status: str
    scheduledDate: datetime


class ReschedulingEntry(BaseModel):
    oldDate: Optional[str] = None
    newDate: Optional[str] = None
    reason: Optional[str] = None
    requestedBy: Optional[str] = None
    requestedAt: Optional[str] = None


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: str
    customerId: str
    serviceId: str
    professionalId: Optional[str] = None
    status: str
    version: int
    destination: dict
    address: Optional[str] = None
    scheduledDate: datetime
    totalAmount: float
    isEmergency: bool
    priority: str
    verificationCode: Optional[str] = None  # Only shown to the booking's customer
    reschedulingHistory: List[ReschedulingEntry] = []
    etaMinutes: Optional[int] = None
    cancellationReason: Optional[str] = None
    rejectionReason: Optional[str] = None
    acceptedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None


class TrackingResponse(BaseModel):
    bookingId: str
    status: str
    professionalLocation: Optional[dict] = None
    destination: dict
    etaMinutes: Optional[int] = None
    phase: Optional[str] = None
    updatedAt: Optional[datetime] = None
