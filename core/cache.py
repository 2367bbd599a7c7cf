"""
Key/value persistence using Redis with fallback to in-memory storage.

Used for the background task list and for caching data hub lookups.
"""

import json
import logging
import threading
from datetime import datetime
from typing import Any, Optional, Dict

from core.redis_client import get_redis_client

logger = logging.getLogger(__name__)

KEY_PREFIX = 'audit_app:'


class KeyValueStore:
    """JSON key/value store. Redis first, in-memory dict as fallback."""

    def __init__(self, redis_client=None, use_redis: bool = True):
        self._redis = redis_client
        self._use_redis = use_redis
        self._memory_cache: Dict[str, Any] = {}
        self._expires_at: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _client(self):
        if not self._use_redis:
            return None
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    def get_json(self, key: str) -> Optional[Any]:
        full_key = KEY_PREFIX + key

        redis_client = self._client()
        if redis_client is not None:
            try:
                cached = redis_client.get(full_key)
                if cached:
                    return json.loads(cached)
            except Exception as e:
                logger.warning(f"Redis read failed for {key}: {e}, checking in-memory")

        with self._lock:
            expires_at = self._expires_at.get(full_key)
            if expires_at and expires_at <= datetime.now():
                self._memory_cache.pop(full_key, None)
                self._expires_at.pop(full_key, None)
                return None
            return self._memory_cache.get(full_key)

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        full_key = KEY_PREFIX + key
        payload = json.dumps(value, ensure_ascii=False, default=str)

        redis_client = self._client()
        if redis_client is not None:
            try:
                if ttl:
                    redis_client.setex(full_key, ttl, payload)
                else:
                    redis_client.set(full_key, payload)
            except Exception as e:
                logger.warning(f"Redis write failed for {key}: {e}")

        # Store in memory as fallback; keep the decoded copy so reads match Redis
        with self._lock:
            self._memory_cache[full_key] = json.loads(payload)
            if ttl:
                self._expires_at[full_key] = datetime.fromtimestamp(datetime.now().timestamp() + ttl)
            else:
                self._expires_at.pop(full_key, None)

    def delete(self, key: str) -> None:
        full_key = KEY_PREFIX + key

        redis_client = self._client()
        if redis_client is not None:
            try:
                redis_client.delete(full_key)
            except Exception as e:
                logger.warning(f"Redis delete failed for {key}: {e}")

        with self._lock:
            self._memory_cache.pop(full_key, None)
            self._expires_at.pop(full_key, None)

    def clear_prefix(self, prefix: str) -> None:
        """Drop every key starting with prefix (e.g. invalidate a cache family)."""
        full_prefix = KEY_PREFIX + prefix

        redis_client = self._client()
        if redis_client is not None:
            try:
                for redis_key in redis_client.scan_iter(match=f"{full_prefix}*"):
                    redis_client.delete(redis_key)
            except Exception as e:
                logger.warning(f"Redis prefix clear failed for {prefix}: {e}")

        with self._lock:
            for key in [k for k in self._memory_cache if k.startswith(full_prefix)]:
                self._memory_cache.pop(key, None)
                self._expires_at.pop(key, None)


# Global instance
kv_store = KeyValueStore()
