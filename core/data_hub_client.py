"""
Data hub client with retry logic for idempotent GET calls.
"""

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import httpx
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_incrementing,
    retry_if_exception,
    before_sleep_log,
)

from core.cache import KeyValueStore, kv_store

logger = logging.getLogger(__name__)

DATA_HUB_HOST = os.getenv("DATA_HUB_HOST", "http://115.190.44.247").rstrip("/")
DATA_HUB_TOKEN = os.getenv("DATA_HUB_TOKEN", "")
DATA_HUB_TIMEOUT = float(os.getenv("DATA_HUB_TIMEOUT", "30"))
TENDER_DOC_TYPE_CODE = os.getenv("TENDER_DOC_TYPE_CODE", "ZTZA790000001")

CACHE_TTL_SECONDS = 300

RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({408, 429})


class DataHubError(Exception):
    """Custom exception for data hub errors."""
    pass


def is_retryable_error(exc: BaseException) -> bool:
    """Network errors, 5xx, 408 and 429 are worth retrying; other HTTP errors are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


@dataclass
class RetryPolicy:
    """
    Retry policy for idempotent requests.

    Up to `max_retries` retries after the first attempt, with linear
    backoff (1s, 2s, 3s by default).
    """
    max_retries: int = 3
    backoff_start: float = 1.0
    backoff_increment: float = 1.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_error)
    sleep: Callable[[float], None] = time.sleep

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_incrementing(start=self.backoff_start, increment=self.backoff_increment),
            retry=retry_if_exception(self.retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    def call(self, fn: Callable[[], Any]) -> Any:
        return self.retrying()(fn)


class DataHubClient:
    """
    Client for the data hub REST API (/api/v1).
    """

    def __init__(
        self,
        host: str = DATA_HUB_HOST,
        token: str = DATA_HUB_TOKEN,
        http_client: Optional[httpx.Client] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[KeyValueStore] = None,
    ):
        self.host = host.rstrip("/")
        self.token = token
        self.client = http_client or httpx.Client(base_url=self.host, timeout=DATA_HUB_TIMEOUT)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache if cache is not None else kv_store

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "X-Trace-Id": f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
        }

    def get(self, path: str) -> Any:
        """
        GET a data hub path and return the envelope's `data`.

        Raises:
            DataHubError: if the request fails after all retries
        """
        def _request():
            response = self.client.get(path, headers=self._headers())
            response.raise_for_status()
            return response.json()

        try:
            payload = self.retry_policy.call(_request)
        except httpx.HTTPStatusError as e:
            logger.error(f"Data hub returned {e.response.status_code} for {path}: {e.response.text[:500]}")
            raise DataHubError(f"Data hub request failed: {e.response.status_code} {e.response.reason_phrase}")
        except httpx.HTTPError as e:
            logger.error(f"Data hub request failed for {path}: {e}")
            raise DataHubError(f"Data hub unreachable: {e}")
        except ValueError as e:
            logger.error(f"Data hub returned invalid JSON for {path}: {e}")
            raise DataHubError("Data hub returned invalid JSON")

        if isinstance(payload, dict):
            return payload.get("data")
        return payload

    def cached_get(self, path: str, cache_key: Optional[str] = None) -> Any:
        key = f"datahub:{cache_key or path}"
        cached = self.cache.get_json(key)
        if cached is not None:
            return cached
        data = self.get(path)
        self.cache.set_json(key, data, ttl=CACHE_TTL_SECONDS)
        return data

    def clear_cache(self) -> None:
        self.cache.clear_prefix("datahub:")

    def fetch_all_rules(self) -> List[Dict[str, Any]]:
        """All audit rules from the hub. Requires a configured token."""
        if not self.token:
            raise DataHubError("Data hub token is not configured; set DATA_HUB_TOKEN")
        logger.info(f"Fetching audit rules from {self.host}")
        return self.get("/api/v1/audit-rules/all") or []

    def get_doc_type_full(self, code: str) -> Dict[str, Any]:
        """Document type with its field definitions (cached)."""
        return self.cached_get(f"/api/v1/doc-types/full/{code}", f"doc-type-full-{code}") or {}

    def get_tender_field_definitions(self) -> List[Dict[str, Any]]:
        """Field definitions of the tender document type."""
        full = self.get_doc_type_full(TENDER_DOC_TYPE_CODE)
        return full.get("fields") or []

    def close(self) -> None:
        self.client.close()


def get_data_hub_client():
    """FastAPI dependency; reads configuration at call time and closes the client after the request."""
    hub = DataHubClient(
        host=os.getenv("DATA_HUB_HOST", DATA_HUB_HOST),
        token=os.getenv("DATA_HUB_TOKEN", DATA_HUB_TOKEN),
    )
    try:
        yield hub
    finally:
        hub.close()
