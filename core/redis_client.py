"""
Redis client configuration for task persistence and caching.
"""

import os
import redis
import logging
from typing import Optional

# Suppress verbose Redis logs
logging.getLogger('redis').setLevel(logging.WARNING)

# Redis configuration
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

_redis_client: Optional[redis.Redis] = None
_redis_checked = False


def _connect() -> Optional[redis.Redis]:
    try:
        client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        # Test connection
        client.ping()
        logging.debug("Redis connection established")
        return client
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logging.debug(f"Redis connection failed: {e}. Using in-memory storage.")
        return None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client instance, connecting on first use."""
    global _redis_client, _redis_checked
    if not _redis_checked:
        _redis_client = _connect()
        _redis_checked = True
    return _redis_client


def is_redis_available() -> bool:
    """Check if Redis is available."""
    return get_redis_client() is not None
