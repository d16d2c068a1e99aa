"""Tests for outbox delivery, the push gateway, realtime publishing and geocoding."""

import asyncio
from datetime import timedelta

import httpx
from conftest import FakeGateway

from app.config import OUTBOX_MAX_ATTEMPTS
from app.models import OutboxEvent, utcnow
from app.services.geocoding_service import GeocodingProvider
from app.services.notification_service import (
    BOOKING_ACCEPTED,
    BOOKING_REQUEST,
    NotificationGateway,
    deliver_pending,
    enqueue_notification,
    retry_delay,
)
from app.services.realtime import RealtimeBus


def enqueue(db, recipient="u1", event_type=BOOKING_ACCEPTED, priority="normal", booking_id=None):
    event = enqueue_notification(
        db, recipient, event_type, {"message": "hi"}, priority=priority, booking_id=booking_id
    )
    db.commit()
    return event


class TestOutbox:
    def test_delivers_pending_events(self, db, gateway):
        enqueue(db, "u1")
        enqueue(db, "u2")

        result = deliver_pending(db, gateway=gateway)
        assert result == {"delivered": 2, "retried": 0, "failed": 0}
        assert [user for user, _, _ in gateway.sent] == ["u1", "u2"]
        assert gateway.sent[0][1] == {"type": BOOKING_ACCEPTED, "payload": {"message": "hi"}}
        assert {e.status for e in db.query(OutboxEvent).all()} == {"delivered"}

        # Nothing left to do
        assert deliver_pending(db, gateway=gateway)["delivered"] == 0

    def test_high_priority_first(self, db, gateway):
        enqueue(db, "normal")
        enqueue(db, "urgent", priority="high")
        deliver_pending(db, gateway=gateway)
        assert [user for user, _, _ in gateway.sent] == ["urgent", "normal"]
        assert gateway.sent[0][2] == "high"

    def test_failed_push_is_retried_with_backoff(self, db, gateway):
        event = enqueue(db)
        gateway.fail = True
        now = utcnow()

        result = deliver_pending(db, gateway=gateway, now=now)
        assert result["retried"] == 1
        db.refresh(event)
        assert event.status == "pending"
        assert event.attempts == 1
        assert event.next_attempt_at == now + retry_delay(1)
        assert "FCM unavailable" in event.last_error

        # Not due yet
        assert deliver_pending(db, gateway=gateway, now=now)["retried"] == 0

        gateway.fail = False
        assert deliver_pending(db, gateway=gateway, now=now + timedelta(hours=1))["delivered"] == 1
        db.refresh(event)
        assert event.status == "delivered"

    def test_marked_failed_after_max_attempts(self, db, gateway):
        event = enqueue(db)
        gateway.fail = True
        now = utcnow()
        for attempt in range(OUTBOX_MAX_ATTEMPTS):
            deliver_pending(db, gateway=gateway, now=now + timedelta(days=attempt))

        db.refresh(event)
        assert event.status == "failed"
        assert event.attempts == OUTBOX_MAX_ATTEMPTS
        assert deliver_pending(db, gateway=gateway, now=now + timedelta(days=30))["failed"] == 0

    def test_booking_filter(self, db, gateway):
        enqueue(db, "a", booking_id="b1")
        enqueue(db, "b", booking_id="b2")
        deliver_pending(db, gateway=gateway, booking_id="b2")
        assert [user for user, _, _ in gateway.sent] == ["b"]

    def test_push_runs_outside_a_transaction(self, db):
        class TransactionRecordingGateway(FakeGateway):
            def send_push_notification(self, user_id, notification, priority="normal"):
                self.open_transaction = db.in_transaction()
                return super().send_push_notification(user_id, notification, priority)

        gateway = TransactionRecordingGateway()
        enqueue(db, "u1")
        # A loaded row must not drag the session back into a transaction
        db.query(OutboxEvent).one()

        assert deliver_pending(db, gateway=gateway)["delivered"] == 1
        assert gateway.open_transaction is False

    def test_retry_delay_doubles(self):
        assert retry_delay(2) == retry_delay(1) * 2
        assert retry_delay(3) == retry_delay(1) * 4


class TestGateway:
    def test_disabled_without_credentials(self):
        gateway = NotificationGateway(credentials_path="")
        assert not gateway.enabled
        assert gateway.send_push_notification("u1", {"type": BOOKING_REQUEST, "payload": {}}) is False

    def test_disabled_gateway_counts_as_delivered(self, db):
        enqueue(db)
        result = deliver_pending(db, gateway=NotificationGateway(credentials_path=""))
        assert result["delivered"] == 1

    def test_fake_gateway_records_priority(self):
        gateway = FakeGateway()
        gateway.send_push_notification("u1", {"type": BOOKING_REQUEST}, priority="high")
        assert gateway.sent == [("u1", {"type": BOOKING_REQUEST}, "high")]


class TestRealtime:
    def test_publishes_to_room_channel(self, realtime, fake_redis):
        assert realtime.emit("booking_b1", "booking_status_update", {"status": "accepted"})
        channel, message = fake_redis.published[0]
        assert channel == "realtime:booking_b1"
        assert '"event": "booking_status_update"' in message

    def test_redis_outage_is_fail_open(self):
        def unavailable():
            raise ConnectionError("Redis down")

        assert RealtimeBus(client_factory=unavailable).emit("user_1", "x", {}) is False


class TestGeocoding:
    def geocode(self, handler, address="MG Road, Bangalore"):
        provider = GeocodingProvider(
            base_url="https://nominatim.test", user_agent="tests", transport=httpx.MockTransport(handler)
        )
        return asyncio.run(provider.geocode(address))

    def test_first_match(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["agent"] = request.headers["user-agent"]
            return httpx.Response(
                200, json=[{"lon": "77.6", "lat": "12.97", "display_name": "MG Road, Bengaluru"}]
            )

        result = self.geocode(handler)
        assert result == {"coordinates": [77.6, 12.97], "formattedAddress": "MG Road, Bengaluru"}
        assert seen["url"].path == "/search"
        assert seen["url"].params["format"] == "json"
        assert seen["agent"] == "tests"

    def test_no_match(self):
        assert self.geocode(lambda request: httpx.Response(200, json=[])) is None

    def test_upstream_error(self):
        assert self.geocode(lambda request: httpx.Response(503, text="busy")) is None

    def test_blank_address_skips_lookup(self):
        def handler(request):
            raise AssertionError("should not be called")

        assert self.geocode(handler, address="   ") is None
