"""Set-Cookie construction for the chat session cookie."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from typing import Any

from edge_common.http import request_cookies

from .config import CookieSettings

SESSION_COOKIE_PATH = "/"
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _http_date(value: datetime) -> str:
    return format_datetime(value.astimezone(UTC), usegmt=True)


def _directives(name: str, value: str, settings: CookieSettings, expires: datetime) -> list[str]:
    directives = [
        f"{name}={value}",
        f"Path={SESSION_COOKIE_PATH}",
        f"Domain={settings.domain}",
        f"Expires={_http_date(expires)}",
        "SameSite=None",
        "HttpOnly",
    ]
    if settings.secure:
        directives.append("Secure")
    return directives


def build_session_cookie(
    token: str,
    settings: CookieSettings,
    *,
    expires_at_ms: int | None = None,
    now: datetime | None = None,
) -> str:
    """Cookie carrying the session token.

    Expires follows the session's own expiry when known, else now + TTL.
    """
    now = now or datetime.now(UTC)
    if expires_at_ms:
        expires = datetime.fromtimestamp(expires_at_ms / 1000, tz=UTC)
    else:
        expires = now + timedelta(seconds=settings.ttl_seconds)
    max_age = max(int((expires - now).total_seconds()), 0)
    directives = _directives(settings.name, token, settings, expires)
    directives.append(f"Max-Age={max_age}")
    return "; ".join(directives)


def build_expired_cookie(settings: CookieSettings) -> str:
    directives = _directives(settings.name, "", settings, _EPOCH)
    directives.append("Max-Age=0")
    return "; ".join(directives)


def read_session_cookie(event: dict[str, Any], name: str) -> str | None:
    value = request_cookies(event).get(name)
    return value or None
