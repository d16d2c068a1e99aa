import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False, index=True)  # plumbing, electrical, ...
    description = Column(Text, nullable=True)
    base_price = Column(Float, nullable=False, default=0)
    pricing_model = Column(String(20), default="fixed", nullable=False)  # fixed, hourly, per_unit, custom
    # Specializations allowed to serve this service; empty means the category itself
    professional_types = Column(JSON, default=list, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    bookings = relationship("Booking", back_populates="service")


class Professional(Base):
    __tablename__ = "professionals"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    specializations = Column(JSON, default=list, nullable=False)
    # registration_pending, document_pending, under_review, verified, rejected
    verification_status = Column(String(30), default="registration_pending", nullable=False, index=True)
    rating_average = Column(Float, default=0, nullable=False)  # Read-only here; aggregated elsewhere

    # Dispatch state - only written through ProfessionalRegistry.set_assignment
    is_available = Column(Boolean, default=True, nullable=False, index=True)
    current_booking_id = Column(String(36), nullable=True, index=True)
    assignment_phase = Column(String(20), nullable=True)  # assigned, en_route, arrived, started

    # Live location (written by location pings)
    latitude = Column(Float, nullable=True, index=True)
    longitude = Column(Float, nullable=True, index=True)
    location_accuracy = Column(Float, nullable=True)
    location_heading = Column(Float, nullable=True)
    location_speed = Column(Float, nullable=True)
    location_timestamp = Column(DateTime, nullable=True)
    accepting_jobs = Column(Boolean, default=True, nullable=False)  # Self-reported with each ping
    is_online = Column(Boolean, default=False, nullable=False, index=True)
    last_seen = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    location_history = relationship(
        "ProfessionalLocation",
        back_populates="professional",
        order_by="ProfessionalLocation.recorded_at.desc()",
        cascade="all, delete-orphan",
    )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class ProfessionalLocation(Base):
    """Location history entry; newest first, capped per professional"""

    __tablename__ = "professional_locations"
    __table_args__ = (
        UniqueConstraint("professional_id", "recorded_at", name="uq_professional_location_ts"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    professional_id = Column(String(36), ForeignKey("professionals.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    source = Column(String(20), default="gps", nullable=False)
    recorded_at = Column(DateTime, nullable=False)

    professional = relationship("Professional", back_populates="location_history")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_customer_created", "customer_id", "created_at"),
        Index("ix_bookings_status_next_dispatch", "status", "next_dispatch_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_public_id)
    customer_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    professional_id = Column(
        String(36), ForeignKey("professionals.id"), nullable=True, index=True
    )

    # Status workflow: pending → accepted → (assigned) → in_progress → completed
    # pending may also end as rejected or cancelled; see domain/bookings/state_machine.py
    status = Column(String(20), default="pending", nullable=False, index=True)
    # Bumped on every guarded write; compare-and-set key for BookingStore.transition
    version = Column(Integer, default=1, nullable=False)

    # Destination
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    address = Column(Text, nullable=True)

    scheduled_date = Column(DateTime, nullable=False)
    total_amount = Column(Float, nullable=False, default=0)
    currency = Column(String(10), default="USD")
    verification_code = Column(String(6), nullable=False)  # Immutable after creation

    is_emergency = Column(Boolean, default=False, nullable=False)
    priority = Column(String(10), default="normal", nullable=False)  # normal, high

    # [{oldDate, newDate, reason, requestedBy, requestedAt}]
    rescheduling_history = Column(JSON, default=list, nullable=False)

    # Tracking snapshot - written by location pings, never by dispatch transitions
    tracking_longitude = Column(Float, nullable=True)
    tracking_latitude = Column(Float, nullable=True)
    tracking_updated_at = Column(DateTime, nullable=True)
    eta_minutes = Column(Integer, nullable=True)
    en_route_at = Column(DateTime, nullable=True)
    arrived_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)

    # Dispatch bookkeeping
    dispatch_attempts = Column(Integer, default=0, nullable=False)
    next_dispatch_at = Column(DateTime, nullable=True)
    notified_professional_ids = Column(JSON, default=list, nullable=False)

    cancellation_reason = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    service = relationship("Service", back_populates="bookings")
    professional = relationship("Professional", foreign_keys=[professional_id])

    @property
    def destination(self) -> dict:
        return {"type": "Point", "coordinates": [self.longitude, self.latitude]}


class OutboxEvent(Base):
    """Pending notification, written in the same transaction as the state change it reports"""

    __tablename__ = "notification_outbox"
    __table_args__ = (Index("ix_outbox_status_next_attempt", "status", "next_attempt_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # BOOKING_ACCEPTED, EMERGENCY_BOOKING, ...
    payload = Column(JSON, default=dict, nullable=False)
    priority = Column(String(10), default="normal", nullable=False)
    booking_id = Column(String(36), nullable=True, index=True)

    status = Column(String(20), default="pending", nullable=False)  # pending, delivered, failed
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, default=utcnow, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
