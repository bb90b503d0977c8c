"""
upload_broker.access_gate — Rate limit and AV scan gate for GET presigning.

Order matters: the rate limiter runs first so a throttled client never costs
a HEAD request against the store.

The rate limiter does read-then-write against the edge cache, which has no
atomic increment. Concurrent bursts from one client can be miscounted by one;
that is an accepted approximation.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import requests
from aws_lambda_powertools import Logger
from edge_common.cache import EdgeCache
from edge_common.exceptions import ForbiddenError, RateLimitedError, ScanPendingError
from edge_common.http import get_header, source_ip
from edge_common.models import (
    RATE_LIMIT_RECORD_TTL_SECONDS,
    RATE_LIMIT_WINDOW_SECONDS,
    RateLimitWindow,
    ScanStatus,
)

logger = Logger(service="upload-broker")

SCAN_STATUS_HEADER = "x-amz-meta-scan-status"
LEGACY_SCAN_HEADER = "x-scan"


def client_identifier(event: dict[str, Any]) -> str:
    """Client-supplied id, else the connecting IP, else "unknown"."""
    for header in ("x-client-id", "cf-connecting-ip"):
        value = get_header(event, header)
        if value and value.strip():
            return value.strip()
    forwarded = get_header(event, "x-forwarded-for")
    if forwarded and forwarded.split(",")[0].strip():
        return forwarded.split(",")[0].strip()
    return source_ip(event) or "unknown"


class RateLimiter:
    def __init__(
        self,
        cache: EdgeCache | None,
        *,
        limit: int,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._limit = limit
        self._window_ms = window_seconds * 1000
        self._clock = clock

    @staticmethod
    def _cache_key(client_id: str) -> str:
        return f"ratelimit:{client_id}"

    def check(self, client_id: str) -> RateLimitWindow | None:
        """Count one request for client_id or raise RateLimitedError.

        Returns the window after counting, or None when rate limiting is off
        (no cache configured) or the cache is unavailable.
        """
        if self._cache is None:
            return None

        now_ms = int(self._clock() * 1000)
        key = self._cache_key(client_id)
        try:
            window = RateLimitWindow.from_cache(client_id, self._cache.get(key))
            if window is None or window.is_expired(now_ms):
                window = RateLimitWindow(
                    client_id=client_id, count=1, reset_at_epoch_ms=now_ms + self._window_ms
                )
            elif window.count >= self._limit:
                logger.warning(
                    "Rate limit exceeded",
                    extra={"client_id": client_id, "count": window.count, "limit": self._limit},
                )
                raise RateLimitedError("Rate limit exceeded")
            else:
                window = RateLimitWindow(
                    client_id=client_id,
                    count=window.count + 1,
                    reset_at_epoch_ms=window.reset_at_epoch_ms,
                )
            self._cache.put(key, window.to_cache(), ttl_seconds=RATE_LIMIT_RECORD_TTL_SECONDS)
            return window
        except RateLimitedError:
            raise
        except Exception:
            # Fail open: a cache outage must not block downloads.
            logger.exception("Rate limit check failed", extra={"client_id": client_id})
            return None


class ScanGate:
    """Reads the object's scan-status metadata via HEAD."""

    def __init__(self, store: Any) -> None:
        self._store = store

    def status(self, key: str) -> ScanStatus:
        try:
            response = self._store.head_object(key)
        except requests.RequestException:
            logger.exception("Scan status HEAD failed", extra={"key": key})
            return ScanStatus.PENDING
        if not response.ok:
            # Missing object or store error: the caller polls again later.
            logger.info(
                "Scan status unavailable", extra={"key": key, "status": response.status_code}
            )
            return ScanStatus.PENDING
        value = response.headers.get(SCAN_STATUS_HEADER) or response.headers.get(
            LEGACY_SCAN_HEADER
        )
        return ScanStatus.from_metadata(value)

    def check(self, key: str) -> None:
        status = self.status(key)
        if status is ScanStatus.INFECTED:
            logger.warning("Download refused for infected object", extra={"key": key})
            raise ForbiddenError("File failed security scan")
        if status is ScanStatus.PENDING:
            raise ScanPendingError("File scan in progress, please try again shortly")


class AccessGate:
    def __init__(self, rate_limiter: RateLimiter, scan_gate: ScanGate) -> None:
        self._rate_limiter = rate_limiter
        self._scan_gate = scan_gate

    def authorize_download(self, client_id: str, key: str) -> None:
        self._rate_limiter.check(client_id)
        self._scan_gate.check(key)
