"""
Realtime bus - publish side of the socket fan-out

Events go to the Redis pub/sub channel realtime:{room}; the socket gateway
subscribed to those channels forwards them to connected clients. Publishing
is best-effort: a Redis outage is logged and never fails the caller.
"""

import json
import logging
from typing import Callable

from ..redis_client import get_redis_client

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "realtime"


def booking_room(booking_id: str) -> str:
    return f"booking_{booking_id}"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


class RealtimeBus:
    def __init__(self, client_factory: Callable = get_redis_client):
        self.client_factory = client_factory

    def emit(self, room: str, event: str, payload: dict) -> bool:
        """Publish event to a room. Returns False if it could not be published."""
        try:
            client = self.client_factory()
            message = json.dumps({"room": room, "event": event, "payload": payload}, default=str)
            receivers = client.publish(f"{CHANNEL_PREFIX}:{room}", message)
            logger.debug(f"📡 {event} → {room} ({receivers} subscriber(s))")
            return True
        except Exception as e:
            logger.warning(f"⚠️ Realtime publish of {event} to {room} failed: {e}")
            return False


realtime_bus = RealtimeBus()
