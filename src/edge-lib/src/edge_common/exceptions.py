"""
edge_common.exceptions — Error taxonomy shared by the edge handlers.

Every error a handler can deliberately return is an EdgeError subclass.
Handlers catch EdgeError at the top level and serialise it as
{"ok": false, "error": ..., "upstreamStatus": ...}; anything else is an
unexpected failure and goes through the catch-all (500 + error reporting).
"""

from __future__ import annotations


class EdgeError(Exception):
    """
    Base class for errors that map onto an HTTP response.

    Attributes:
        status_code:     HTTP status returned to the caller.
        code:            Stable machine-readable error code (used in logs).
        upstream_status: Status code returned by an upstream service, if any.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        self.message = message
        self.upstream_status = upstream_status
        super().__init__(message)

    @property
    def public_message(self) -> str:
        return self.message


class ValidationError(EdgeError):
    status_code = 400
    code = "BAD_REQUEST"


class ConfigurationError(EdgeError):
    """Required environment configuration is missing or invalid."""

    status_code = 500
    code = "CONFIGURATION_ERROR"


class AuthError(EdgeError):
    """
    Identity token rejected.

    The specific kind is kept for logging; callers only ever see a generic
    message so a client cannot tell which check failed.
    """

    status_code = 401
    code = "UNAUTHENTICATED"
    kind = "invalid_token"

    @property
    def public_message(self) -> str:
        return "Invalid token"


class MalformedTokenError(AuthError):
    kind = "malformed_token"


class UnknownKeyError(AuthError):
    kind = "unknown_key"


class InvalidSignatureError(AuthError):
    kind = "invalid_signature"


class InvalidIssuerError(AuthError):
    kind = "invalid_issuer"


class InvalidAudienceError(AuthError):
    kind = "invalid_audience"


class TokenExpiredError(AuthError):
    kind = "token_expired"


class TokenNotYetValidError(AuthError):
    kind = "token_not_yet_valid"


class SessionInvalidError(AuthError):
    """Session cookie missing or rejected by the chat platform."""

    kind = "session_invalid"

    @property
    def public_message(self) -> str:
        return self.message


class ForbiddenError(EdgeError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(EdgeError):
    status_code = 404
    code = "NOT_FOUND"


class RateLimitedError(EdgeError):
    status_code = 429
    code = "RATE_LIMITED"


class ScanPendingError(EdgeError):
    """Advisory: the object has not been cleared by the AV scanner yet."""

    status_code = 202
    code = "SCAN_PENDING"

    def __init__(self, message: str, *, retry_after_seconds: int = 5) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class UpstreamError(EdgeError):
    """
    An upstream service (object store, JWKS endpoint, chat platform) returned
    an unexpected status.

    Upstream 4xx/5xx statuses are passed through to the caller; anything else
    (including a 2xx with an unusable body) becomes a 500.
    """

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(message, upstream_status=upstream_status)
        if upstream_status is not None and 400 <= upstream_status <= 599:
            self.status_code = upstream_status
        else:
            self.status_code = 500


class UpstreamParseError(UpstreamError):
    code = "UPSTREAM_PARSE_ERROR"
