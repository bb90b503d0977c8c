"""
identity_bridge.jwt_verifier — RS256 verification of Clerk session tokens.

Keys come from the issuer's JWKS, cached in the injected edge cache for one
hour under jwks:{url}. A kid missing from a cached set forces a fresh fetch
so key rotation is picked up before the cache entry expires, at most once per
JWKS_REFETCH_INTERVAL_SECONDS (tracked under jwks-fetched:{url}).

Every failure raises an AuthError subclass; the subclass names the failed
check for logging while the HTTP response stays generic.
"""

from __future__ import annotations

from typing import Any

import jwt
import requests
from aws_lambda_powertools import Logger
from edge_common.cache import EdgeCache
from edge_common.exceptions import (
    AuthError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    TokenNotYetValidError,
    UnknownKeyError,
    UpstreamError,
    UpstreamParseError,
)
from edge_common.models import (
    JWKS_CACHE_TTL_SECONDS,
    JWKS_REFETCH_INTERVAL_SECONDS,
    VerifiedClaims,
)

logger = Logger(service="identity-bridge")

ALGORITHMS = ["RS256"]
_JWKS_TIMEOUT_SECONDS = 5


class JwtVerifier:
    """
    Verifies a compact JWS against a JWKS URL.

    leeway_seconds is the clock-skew tolerance applied to exp/nbf. It is zero
    unless a deployment explicitly opts in.
    """

    def __init__(
        self,
        cache: EdgeCache,
        *,
        session: Any = None,
        leeway_seconds: int = 0,
    ) -> None:
        self._cache = cache
        self._session: Any = session or requests.Session()
        self._leeway = leeway_seconds

    # -- JWKS -----------------------------------------------------------------

    @staticmethod
    def _cache_key(jwks_url: str) -> str:
        return f"jwks:{jwks_url}"

    @staticmethod
    def _fetched_key(jwks_url: str) -> str:
        return f"jwks-fetched:{jwks_url}"

    def _fetch_jwks(self, jwks_url: str) -> dict[str, Any]:
        response = self._session.request("GET", jwks_url, timeout=_JWKS_TIMEOUT_SECONDS)
        if not response.ok:
            raise UpstreamError(
                f"Unable to fetch JWKS ({response.status_code})",
                upstream_status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamParseError("JWKS response is not JSON") from exc
        if not isinstance(body, dict) or not isinstance(body.get("keys"), list):
            raise UpstreamParseError("JWKS response has no keys array")
        logger.info("JWKS fetched", extra={"jwks_url": jwks_url, "keys": len(body["keys"])})
        return body

    @staticmethod
    def _select(jwks: dict[str, Any], kid: str) -> dict[str, Any] | None:
        for key in jwks.get("keys", []):
            if isinstance(key, dict) and key.get("kid") == kid:
                return key
        return None

    def _fetch_and_mark(self, jwks_url: str) -> dict[str, Any]:
        jwks = self._fetch_jwks(jwks_url)
        self._cache.put(
            self._fetched_key(jwks_url), 1, ttl_seconds=JWKS_REFETCH_INTERVAL_SECONDS
        )
        return jwks

    def find_jwk(self, kid: str, jwks_url: str) -> dict[str, Any]:
        cache_key = self._cache_key(jwks_url)
        jwks = self._cache.get_or_fetch(
            cache_key,
            lambda: self._fetch_and_mark(jwks_url),
            ttl_seconds=JWKS_CACHE_TTL_SECONDS,
        )
        jwk = self._select(jwks, kid)
        if jwk is not None:
            return jwk

        if self._cache.get(self._fetched_key(jwks_url)) is not None:
            raise UnknownKeyError(f"JWKS missing key {kid}")

        logger.info("kid not in cached JWKS, refetching", extra={"kid": kid})
        jwks = self._fetch_and_mark(jwks_url)
        self._cache.put(cache_key, jwks, ttl_seconds=JWKS_CACHE_TTL_SECONDS)
        jwk = self._select(jwks, kid)
        if jwk is None:
            raise UnknownKeyError(f"JWKS missing key {kid}")
        return jwk

    # -- verification -------------------------------------------------------

    def verify(self, token: str, *, issuer: str, audience: str, jwks_url: str) -> VerifiedClaims:
        segments = token.split(".") if isinstance(token, str) else []
        if len(segments) != 3 or not all(segments):
            raise MalformedTokenError("Invalid token structure")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise MalformedTokenError("Token header is not valid base64url JSON") from exc

        kid = header.get("kid")
        if not kid:
            raise UnknownKeyError("Token missing kid")

        jwk = self.find_jwk(str(kid), jwks_url)
        if not jwk.get("n") or not jwk.get("e"):
            raise UnknownKeyError("JWKS entry missing modulus or exponent")
        try:
            public_key = jwt.PyJWK(jwk, algorithm="RS256").key
        except (jwt.PyJWKError, jwt.InvalidKeyError) as exc:
            raise UnknownKeyError(f"JWKS entry {kid} is not a usable RSA key") from exc

        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=ALGORITHMS,
                audience=audience,
                issuer=issuer,
                leeway=self._leeway,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignatureError("Token signature invalid") from exc
        except jwt.InvalidAlgorithmError as exc:
            raise InvalidSignatureError("Token algorithm not allowed") from exc
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("Token expired") from exc
        except jwt.ImmatureSignatureError as exc:
            raise TokenNotYetValidError("Token not yet valid") from exc
        except jwt.InvalidIssuerError as exc:
            raise InvalidIssuerError("Token issuer mismatch") from exc
        except jwt.InvalidAudienceError as exc:
            raise InvalidAudienceError("Token audience mismatch") from exc
        except (jwt.MissingRequiredClaimError, jwt.DecodeError) as exc:
            raise MalformedTokenError(str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise AuthError(str(exc)) from exc

        return VerifiedClaims.from_payload(payload)
