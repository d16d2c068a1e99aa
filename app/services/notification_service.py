"""
Notification Service
Push notifications for booking workflow events, delivered through a transactional outbox

Events are written as OutboxEvent rows in the same transaction as the state
change they report, then pushed after commit (right away in the background,
and again by the worker cron for anything that failed).
"""

import json
import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional

from sqlalchemy.orm import Session

from ..config import (
    FIREBASE_CREDENTIALS_PATH,
    OUTBOX_BATCH_SIZE,
    OUTBOX_MAX_ATTEMPTS,
    OUTBOX_RETRY_BASE_SECONDS,
)
from ..models import OutboxEvent, utcnow

logger = logging.getLogger(__name__)

# Event types
BOOKING_REQUEST = "BOOKING_REQUEST"
EMERGENCY_BOOKING = "EMERGENCY_BOOKING"
BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
BOOKING_COMPLETED = "BOOKING_COMPLETED"
BOOKING_RESCHEDULED = "BOOKING_RESCHEDULED"
BOOKING_CANCELLED = "BOOKING_CANCELLED"
BOOKING_REJECTED = "BOOKING_REJECTED"
BOOKING_STATUS_UPDATE = "BOOKING_STATUS_UPDATE"

NOTIFICATION_TITLES = {
    BOOKING_REQUEST: "New booking request",
    EMERGENCY_BOOKING: "Emergency booking nearby",
    BOOKING_ACCEPTED: "Your booking was accepted",
    BOOKING_COMPLETED: "Booking completed",
    BOOKING_RESCHEDULED: "Booking rescheduled",
    BOOKING_CANCELLED: "Booking cancelled",
    BOOKING_REJECTED: "No professional available",
    BOOKING_STATUS_UPDATE: "Booking update",
}

# A claimed event is not picked up by another deliverer for this long
CLAIM_LEASE_SECONDS = 60

PENDING = "pending"
DELIVERED = "delivered"
FAILED = "failed"


class NotificationGateway:
    """Firebase Cloud Messaging push sender; each user is subscribed to topic user_{id}"""

    def __init__(self, credentials_path: str = FIREBASE_CREDENTIALS_PATH):
        self.credentials_path = credentials_path
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            if not self.credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("📵 Push notifications disabled: FIREBASE_CREDENTIALS_PATH not set")
                return

            import firebase_admin
            from firebase_admin import credentials, messaging

            try:
                cred = credentials.Certificate(self.credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("✅ Push notifications initialized")
            except Exception as e:
                self._enabled = False
                logger.error(f"❌ Push notifications disabled, Firebase init failed: {e}")
            finally:
                self._initialized = True

    def send_push_notification(self, user_id: str, notification: dict, priority: str = "normal") -> bool:
        """
        Push {type, payload} to a user.

        Returns False when push is disabled. Raises on delivery failure so the
        outbox can retry.
        """
        if not self.enabled:
            logger.debug(f"📵 Push skipped for user {user_id}: {notification.get('type')}")
            return False

        event_type = notification.get("type", BOOKING_STATUS_UPDATE)
        message = self._messaging.Message(
            topic=f"user_{user_id}",
            notification=self._messaging.Notification(
                title=NOTIFICATION_TITLES.get(event_type, "Booking update"),
                body=notification.get("payload", {}).get("message", ""),
            ),
            data={
                "type": event_type,
                "payload": json.dumps(notification.get("payload", {}), default=str),
            },
            android=self._messaging.AndroidConfig(priority="high" if priority == "high" else "normal"),
        )
        message_id = self._messaging.send(message)
        logger.info(f"📲 Push {event_type} sent to user {user_id} ({message_id})")
        return True


notification_gateway = NotificationGateway()


def enqueue_notification(
    db: Session,
    recipient_id: str,
    event_type: str,
    payload: dict,
    priority: str = "normal",
    booking_id: Optional[str] = None,
) -> OutboxEvent:
    """Add an outbox row to the caller's transaction. Does not commit."""
    event = OutboxEvent(
        recipient_id=str(recipient_id),
        event_type=event_type,
        payload=payload,
        priority=priority,
        booking_id=booking_id,
        status=PENDING,
        attempts=0,
        next_attempt_at=utcnow(),
    )
    db.add(event)
    return event


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff after the given number of failed attempts"""
    return timedelta(seconds=OUTBOX_RETRY_BASE_SECONDS * (2 ** max(attempts - 1, 0)))


def _claim(db: Session, event_id: int, now: datetime) -> bool:
    """Push next_attempt_at forward so concurrent deliverers skip this event"""
    claimed = (
        db.query(OutboxEvent)
        .filter(
            OutboxEvent.id == event_id,
            OutboxEvent.status == PENDING,
            OutboxEvent.next_attempt_at <= now,
        )
        .update(
            {"next_attempt_at": now + timedelta(seconds=CLAIM_LEASE_SECONDS)},
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(claimed)


def deliver_pending(
    db: Session,
    gateway: Optional[NotificationGateway] = None,
    booking_id: Optional[str] = None,
    now: Optional[datetime] = None,
    batch_size: int = OUTBOX_BATCH_SIZE,
) -> dict:
    """
    Push due outbox events.

    Each event is claimed first, so two deliverers never push the same row.
    A failed push increments attempts and schedules a retry; after
    OUTBOX_MAX_ATTEMPTS the event is marked failed.

    Returns:
        Dict with delivered, retried and failed counts
    """
    gateway = gateway or notification_gateway
    now = now or utcnow()
    result = {"delivered": 0, "retried": 0, "failed": 0}

    # Plain column rows: nothing to lazy-load, so no transaction is reopened
    # around the push after a claim commits
    query = db.query(
        OutboxEvent.id,
        OutboxEvent.recipient_id,
        OutboxEvent.event_type,
        OutboxEvent.payload,
        OutboxEvent.priority,
        OutboxEvent.attempts,
    ).filter(
        OutboxEvent.status == PENDING,
        OutboxEvent.next_attempt_at <= now,
    )
    if booking_id is not None:
        query = query.filter(OutboxEvent.booking_id == booking_id)
    events = query.order_by(OutboxEvent.priority == "normal", OutboxEvent.id).limit(batch_size).all()
    db.rollback()  # end the read before pushing

    for event in events:
        if not _claim(db, event.id, now):
            logger.debug(f"⏭️ Outbox event {event.id} claimed by another worker")
            continue

        try:
            gateway.send_push_notification(
                event.recipient_id,
                {"type": event.event_type, "payload": event.payload},
                priority=event.priority,
            )
        except Exception as e:
            attempts = event.attempts + 1
            values = {"attempts": attempts, "last_error": str(e)[:500]}
            if attempts >= OUTBOX_MAX_ATTEMPTS:
                values["status"] = FAILED
                result["failed"] += 1
                logger.error(
                    f"❌ Outbox event {event.id} ({event.event_type}) failed permanently "
                    f"after {attempts} attempts: {e}"
                )
            else:
                values["next_attempt_at"] = now + retry_delay(attempts)
                result["retried"] += 1
                logger.warning(
                    f"⚠️ Outbox event {event.id} ({event.event_type}) failed, attempt {attempts}: {e}"
                )
        else:
            values = {"status": DELIVERED, "attempts": event.attempts + 1, "delivered_at": utcnow()}
            result["delivered"] += 1

        db.query(OutboxEvent).filter(OutboxEvent.id == event.id).update(
            values, synchronize_session=False
        )
        db.commit()

    if events:
        logger.info(
            f"📬 Outbox run: {result['delivered']} delivered, {result['retried']} retried, "
            f"{result['failed']} failed"
        )
    return result
