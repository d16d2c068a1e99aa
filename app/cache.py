"""
Redis caching utilities for short-lived location data
Every entry carries a TTL so stale professional positions expire on their own
"""
import json
import logging
from typing import Any, Callable, Optional

from .config import LOCATION_CACHE_TTL_SECONDS
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


class Cache:
    """Redis cache wrapper with automatic serialization"""

    def __init__(self, client_factory: Callable = get_redis_client):
        self.client_factory = client_factory
        self.redis_client = None

    def _get_client(self):
        """Lazy load Redis client"""
        if self.redis_client is None:
            try:
                self.redis_client = self.client_factory()
            except Exception as e:
                logger.warning(f"⚠️ Redis cache unavailable: {e}")
                return None
        return self.redis_client

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        client = self._get_client()
        if not client:
            return None

        try:
            value = client.get(key)
            if value:
                logger.debug(f"✅ Cache HIT: {key}")
                return json.loads(value)
            logger.debug(f"❌ Cache MISS: {key}")
            return None
        except Exception as e:
            logger.error(f"❌ Cache get error for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (default 1 hour)"""
        client = self._get_client()
        if not client:
            return False

        try:
            serialized = json.dumps(value, default=str)
            client.setex(key, ttl, serialized)
            logger.debug(f"✅ Cache SET: {key} (TTL: {ttl}s)")
            return True
        except Exception as e:
            logger.error(f"❌ Cache set error for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        """Delete value from cache"""
        client = self._get_client()
        if not client:
            return False

        try:
            client.delete(key)
            logger.debug(f"✅ Cache DELETE: {key}")
            return True
        except Exception as e:
            logger.error(f"❌ Cache delete error for {key}: {e}")
            return False


# Global cache instance
cache = Cache()


def location_key(professional_id: str) -> str:
    return f"location:{professional_id}"


def cache_professional_location(
    professional_id: str, coordinates: list, timestamp: str, ttl: int = LOCATION_CACHE_TTL_SECONDS
) -> bool:
    """Remember a professional's latest [longitude, latitude] for ttl seconds"""
    return cache.set(
        location_key(professional_id), {"coordinates": coordinates, "timestamp": timestamp}, ttl
    )


def get_cached_location(professional_id: str) -> Optional[dict]:
    return cache.get(location_key(professional_id))


def clear_professional_location(professional_id: str) -> bool:
    """Drop the cached location when the professional disconnects"""
    return cache.delete(location_key(professional_id))
