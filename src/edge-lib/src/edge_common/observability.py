"""
edge_common.observability — Best-effort exception reporting to Sentry.

Events are wrapped in an envelope and posted to the Sentry envelope endpoint
derived from the DSN (https://<public_key>@<host>/<project_id>).

capture_exception only queues the post on a single background worker and
returns immediately, so the caller's error response is never held up by the
tracker. On Lambda the worker is frozen with the sandbox once the response is
returned; a queued report then completes on the next warm invocation or is
lost with the sandbox. Reporting never raises: a failed report is logged.
"""

from __future__ import annotations

import json
import time
import traceback
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

import requests
from aws_lambda_powertools import Logger

logger = Logger(service="error-reporter")

_REPORT_TIMEOUT_SECONDS = 2
_SENTRY_CLIENT = "edge-workers/1.0"

# Shared across warm starts; one worker keeps the requests.Session single-threaded.
_EXECUTOR = ThreadPoolExecutor(max_workers=1, thread_name_prefix="error-reporter")


def parse_dsn(dsn: str) -> tuple[str, str]:
    """Return (envelope_url, public_key) for a Sentry DSN.

    Raises ValueError on a DSN without key or project id.
    """
    parts = urlsplit(dsn)
    prefix, _, project_id = parts.path.strip("/").rpartition("/")
    if not parts.username or not project_id or not parts.hostname:
        raise ValueError("DSN must look like https://<key>@<host>/<project_id>")
    base = f"{parts.scheme}://{parts.hostname}"
    if parts.port:
        base = f"{base}:{parts.port}"
    if prefix:
        base = f"{base}/{prefix}"
    return f"{base}/api/{project_id}/envelope/", parts.username


def build_event(
    exc: BaseException, *, service: str, tags: dict[str, str] | None = None
) -> dict[str, Any]:
    frames = [
        {"filename": frame.filename, "function": frame.name, "lineno": frame.lineno}
        for frame in traceback.extract_tb(exc.__traceback__)
    ]
    return {
        "event_id": uuid.uuid4().hex,
        "timestamp": time.time(),
        "level": "error",
        "platform": "python",
        "logger": service,
        "tags": {"service": service, **(tags or {})},
        "exception": {
            "values": [
                {
                    "type": type(exc).__name__,
                    "value": str(exc),
                    "stacktrace": {"frames": frames},
                }
            ]
        },
    }


def build_envelope(event: dict[str, Any], *, dsn: str) -> bytes:
    """Serialise one event as a Sentry envelope: envelope header, item header, payload."""
    payload = json.dumps(event).encode("utf-8")
    header = {
        "event_id": event["event_id"],
        "dsn": dsn,
        "sent_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
    }
    item_header = {"type": "event", "content_type": "application/json", "length": len(payload)}
    return b"\n".join(
        [json.dumps(header).encode("utf-8"), json.dumps(item_header).encode("utf-8"), payload]
    )


class ErrorReporter:
    def __init__(
        self,
        dsn: str | None,
        *,
        service: str,
        session: Any = None,
        executor: Executor | None = None,
    ) -> None:
        self._dsn = dsn
        self._service = service
        self._session: Any = session
        self._executor = executor or _EXECUTOR

    @property
    def enabled(self) -> bool:
        return bool(self._dsn)

    def capture_exception(
        self, exc: BaseException, *, tags: dict[str, str] | None = None
    ) -> Future[None] | None:
        """Queue a report of exc and return its future, or None when disabled."""
        if not self._dsn:
            return None
        event = build_event(exc, service=self._service, tags=tags)
        return self._executor.submit(self._send, event)

    def _send(self, event: dict[str, Any]) -> None:
        try:
            envelope_url, public_key = parse_dsn(self._dsn or "")
            session = self._session or requests.Session()
            response = session.request(
                "POST",
                envelope_url,
                data=build_envelope(event, dsn=self._dsn or ""),
                headers={
                    "Content-Type": "application/x-sentry-envelope",
                    "X-Sentry-Auth": (
                        f"Sentry sentry_version=7, sentry_client={_SENTRY_CLIENT}, "
                        f"sentry_key={public_key}"
                    ),
                },
                timeout=_REPORT_TIMEOUT_SECONDS,
            )
            if not response.ok:
                logger.warning("Error tracker rejected event", status=response.status_code)
        except (requests.RequestException, ValueError):
            logger.warning("Failed to send error event", exc_info=True)
