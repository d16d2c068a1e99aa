"""
Shared Redis connection
Used by the location cache and the realtime bus; both fail open when Redis is down
"""

import logging
import os
import time
from threading import Lock
from typing import Optional

import redis

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
_client_lock = Lock()

# After a failed connect, don't retry for this many seconds
RECONNECT_BACKOFF_SECONDS = int(os.getenv("REDIS_RECONNECT_BACKOFF_SECONDS", "30"))
_last_failure_time = 0.0


def _mask_url(redis_url: str) -> str:
    if "@" in redis_url:
        url_parts = redis_url.split("@")
        protocol = url_parts[0].split(":")[0]
        return f"{protocol}:****@{url_parts[1]}"
    return "****"


def get_redis_client() -> redis.Redis:
    """
    Get or create the Redis client
    Supports both a REDIS_URL and individual REDIS_* settings

    Raises:
        redis.RedisError: If Redis cannot be reached
    """
    global redis_client, _last_failure_time

    if redis_client is not None:
        return redis_client

    with _client_lock:
        if redis_client is not None:
            return redis_client

        if time.time() - _last_failure_time < RECONNECT_BACKOFF_SECONDS:
            raise redis.ConnectionError("Redis unavailable (waiting before reconnect)")

        logger.info("🔄 Initializing Redis connection...")
        redis_url = os.getenv("REDIS_URL")

        try:
            if redis_url:
                logger.info(f"📡 Using Redis URL connection: {_mask_url(redis_url)}")
                client = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30,
                    max_connections=20,
                )
            else:
                redis_host = os.getenv("REDIS_HOST", "localhost")
                redis_port = int(os.getenv("REDIS_PORT", "6379"))
                redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
                logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (SSL: {redis_ssl})")
                client = redis.Redis(
                    host=redis_host,
                    port=redis_port,
                    password=os.getenv("REDIS_PASSWORD", None),
                    db=int(os.getenv("REDIS_DB", "0")),
                    ssl=redis_ssl,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30,
                    max_connections=20,
                )
            client.ping()
        except Exception as e:
            _last_failure_time = time.time()
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise

        redis_client = client
        logger.info("Redis connected successfully")
        return redis_client
