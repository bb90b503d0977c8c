"""
edge_common.models — Domain records for the edge services as Python dataclasses.

Nothing here is persisted by the services themselves. Records either describe
a derived value (SignedRequest), a state held by an upstream system
(MultipartUpload, DownstreamUser, DownstreamSession) or a value stored in the
edge cache (RateLimitWindow).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# TTL / window constants (seconds)
# ---------------------------------------------------------------------------
JWKS_CACHE_TTL_SECONDS: int = 60 * 60  # 1 hour
JWKS_REFETCH_INTERVAL_SECONDS: int = 60
RATE_LIMIT_WINDOW_SECONDS: int = 60
RATE_LIMIT_RECORD_TTL_SECONDS: int = 120
PART_URL_TTL_SECONDS: int = 900

# S3 multipart limits
MAX_PART_NUMBER: int = 10_000


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ScanStatus(StrEnum):
    CLEAN = "clean"
    INFECTED = "infected"
    PENDING = "pending"

    @classmethod
    def from_metadata(cls, value: str | None) -> ScanStatus:
        """Map the object's scan-status metadata tag onto a ScanStatus.

        quarantine is treated as infected; missing or unknown values are pending.
        """
        normalized = (value or "").strip().lower()
        if normalized == "clean":
            return cls.CLEAN
        if normalized in {"infected", "quarantine"}:
            return cls.INFECTED
        return cls.PENDING


# ---------------------------------------------------------------------------
# Credential Broker
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignedRequest:
    """A SigV4-signed request: either header-authenticated or a presigned URL.

    headers is empty for presigned URLs (the signature lives in the query).
    """

    method: str
    url: str
    resource_path: str
    canonical_query_string: str
    signed_headers: str
    payload_hash: str
    timestamp: str  # amzDate, e.g. 20260101T000000Z
    credential_scope: str
    signature: str
    headers: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class UploadPart:
    part_number: int
    etag: str

    def __post_init__(self) -> None:
        if isinstance(self.part_number, bool) or not isinstance(self.part_number, int):
            raise ValueError("part_number must be an integer")
        if not 1 <= self.part_number <= MAX_PART_NUMBER:
            raise ValueError(f"part_number must be between 1 and {MAX_PART_NUMBER}")
        if not self.etag:
            raise ValueError("etag must be non-empty")


@dataclass(frozen=True)
class MultipartUpload:
    key: str
    upload_id: str
    bucket: str
    parts: tuple[UploadPart, ...] = ()

    def to_dict(self) -> dict[str, str]:
        return {"uploadId": self.upload_id, "key": self.key, "bucket": self.bucket}


@dataclass(frozen=True)
class RateLimitWindow:
    """Fixed window of GET-presign requests for one client id."""

    client_id: str
    count: int
    reset_at_epoch_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.reset_at_epoch_ms

    def to_cache(self) -> dict[str, int]:
        return {"count": self.count, "reset": self.reset_at_epoch_ms}

    @classmethod
    def from_cache(cls, client_id: str, value: Any) -> RateLimitWindow | None:
        if not isinstance(value, dict):
            return None
        try:
            return cls(
                client_id=client_id,
                count=int(value["count"]),
                reset_at_epoch_ms=int(value["reset"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


# ---------------------------------------------------------------------------
# Identity Bridge
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VerifiedClaims:
    """Claims of a Clerk token whose signature and registered claims checked out."""

    issuer: str
    audience: tuple[str, ...]
    subject: str
    email: str | None
    expiry: int
    not_before: int | None = None
    given_name: str = ""
    family_name: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> VerifiedClaims:
        aud = payload.get("aud")
        audience = tuple(aud) if isinstance(aud, list) else ((aud,) if aud else ())
        email = payload.get("email") or payload.get("email_address")
        nbf = payload.get("nbf")
        return cls(
            issuer=str(payload.get("iss", "")),
            audience=tuple(str(a) for a in audience),
            subject=str(payload.get("sub", "")),
            email=str(email) if email else None,
            expiry=int(payload["exp"]),
            not_before=int(nbf) if nbf is not None else None,
            given_name=str(payload.get("given_name") or ""),
            family_name=str(payload.get("family_name") or ""),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class DownstreamUser:
    id: str
    email: str
    username: str
    first_name: str = ""
    last_name: str = ""
    auth_service: str = ""
    auth_data: str = ""

    @classmethod
    def from_api(cls, body: dict[str, Any]) -> DownstreamUser:
        return cls(
            id=str(body["id"]),
            email=str(body.get("email", "")),
            username=str(body.get("username", "")),
            first_name=str(body.get("first_name") or ""),
            last_name=str(body.get("last_name") or ""),
            auth_service=str(body.get("auth_service") or ""),
            auth_data=str(body.get("auth_data") or ""),
        )

    def to_public(self) -> dict[str, str]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }


@dataclass(frozen=True)
class DownstreamSession:
    """A chat-platform session. expires_at is epoch milliseconds, as reported upstream."""

    token: str
    expires_at: int | None = None

    @property
    def expires_at_datetime(self) -> datetime | None:
        if not self.expires_at:
            return None
        return datetime.fromtimestamp(self.expires_at / 1000, tz=UTC)
