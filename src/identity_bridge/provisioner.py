"""
identity_bridge.provisioner — Chat-platform (Mattermost) account provisioning.

Given verified Clerk claims: find or create the user by email, keep its OIDC
binding in sync, make sure it belongs to the configured team (and default
channel), then mint a session.

Failure policy:
  - user lookup other than 200/404, user creation, session creation: fatal
  - auth-binding patch non-2xx, team/channel membership add: logged, tolerated
  - network errors (requests.RequestException): always propagate
"""

from __future__ import annotations

import re
import secrets
from typing import Any
from urllib.parse import quote

import requests
from aws_lambda_powertools import Logger
from edge_common.exceptions import UpstreamError, ValidationError
from edge_common.models import DownstreamSession, DownstreamUser, VerifiedClaims

logger = Logger(service="identity-bridge")

AUTH_SERVICE = "oidc"
SESSION_DEVICE_ID = "clerk-sso"
USERNAME_MAX_LENGTH = 22
_SUFFIX_LENGTH = 6
_REQUEST_TIMEOUT_SECONDS = 10

_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)
_UNDERSCORES = re.compile(r"_+")


def build_username(email: str, subject: str) -> str:
    """Derive a stable chat username from the email local part and subject.

    build_username("a.b+c@example.com", "user_abcdef123456") == "a_b_c_123456"
    """
    local = _NON_ALNUM.sub("_", email.split("@", 1)[0]).lower()
    suffix = _NON_ALNUM.sub("", subject[-_SUFFIX_LENGTH:]).lower()
    local = _UNDERSCORES.sub("_", local).strip("_")
    room = USERNAME_MAX_LENGTH - len(suffix) - 1
    if suffix and len(local) > room:
        local = local[:room].rstrip("_")
    username = f"{local}_{suffix}" if suffix else local
    return _UNDERSCORES.sub("_", username).strip("_")[:USERNAME_MAX_LENGTH]


def _error_text(response: requests.Response) -> str:
    return f"{response.status_code} {response.text}"


class ChatPlatformClient:
    """Thin requests wrapper for the Mattermost v4 REST API."""

    def __init__(self, base_url: str, admin_token: str, *, session: Any = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._admin_token = admin_token
        self._session: Any = session or requests.Session()

    def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        session_token: str | None = None,
    ) -> requests.Response:
        """Call the API as admin, or as the user owning session_token."""
        token = session_token or self._admin_token
        headers = {"Authorization": f"Bearer {token}"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        return self._session.request(
            method,
            f"{self._base_url}{path}",
            headers=headers,
            json=json,
            timeout=_REQUEST_TIMEOUT_SECONDS,
        )


class UpstreamProvisioner:
    def __init__(
        self,
        client: ChatPlatformClient,
        *,
        team_id: str,
        default_channel_id: str | None = None,
    ) -> None:
        self._client = client
        self._team_id = team_id
        self._default_channel_id = default_channel_id

    # -- users ----------------------------------------------------------------

    def ensure_user(self, claims: VerifiedClaims) -> DownstreamUser:
        if not claims.email:
            raise ValidationError("Token missing email")

        email = claims.email
        username = build_username(email, claims.subject)
        existing = self._client.request("GET", f"/api/v4/users/email/{quote(email, safe='')}")

        if existing.status_code == 200:
            user = DownstreamUser.from_api(existing.json())
            user = self._sync_auth_binding(user, claims)
        elif existing.status_code == 404:
            user = self._create_user(claims, username)
        else:
            raise UpstreamError(
                f"Chat user lookup failed: {_error_text(existing)}",
                upstream_status=existing.status_code,
            )

        self.ensure_team_membership(user.id)
        if self._default_channel_id:
            self.ensure_channel_membership(self._default_channel_id, user.id)
        return user

    def _sync_auth_binding(self, user: DownstreamUser, claims: VerifiedClaims) -> DownstreamUser:
        patch = {
            "auth_service": AUTH_SERVICE,
            "auth_data": claims.subject,
            "first_name": claims.given_name,
            "last_name": claims.family_name,
        }
        response = self._client.request("PUT", f"/api/v4/users/{quote(user.id)}/patch", json=patch)
        if response.ok:
            return DownstreamUser.from_api(response.json())
        logger.warning(
            "Chat user patch failed, continuing with existing user",
            extra={"user_id": user.id, "status": response.status_code},
        )
        return user

    def _create_user(self, claims: VerifiedClaims, username: str) -> DownstreamUser:
        payload = {
            "email": claims.email,
            "username": username,
            "first_name": claims.given_name,
            "last_name": claims.family_name,
            "nickname": username,
            "auth_service": AUTH_SERVICE,
            "auth_data": claims.subject,
            "locale": "en",
            # Never used: the account signs in through OIDC only.
            "password": secrets.token_urlsafe(32),
        }
        response = self._client.request("POST", "/api/v4/users", json=payload)
        if not response.ok:
            raise UpstreamError(
                f"Unable to create chat user: {_error_text(response)}",
                upstream_status=response.status_code,
            )
        user = DownstreamUser.from_api(response.json())
        logger.info("Chat user created", extra={"user_id": user.id, "username": user.username})
        return user

    # -- memberships ------------------------------------------------------------

    def ensure_team_membership(self, user_id: str) -> None:
        teams = self._client.request("GET", f"/api/v4/users/{quote(user_id)}/teams")
        if teams.ok:
            body = teams.json()
            if isinstance(body, list) and any(
                isinstance(team, dict) and team.get("id") == self._team_id for team in body
            ):
                return

        response = self._client.request(
            "POST",
            f"/api/v4/teams/{quote(self._team_id)}/members",
            json={"team_id": self._team_id, "user_id": user_id},
        )
        if not response.ok:
            logger.warning(
                "Unable to add user to team",
                extra={
                    "user_id": user_id,
                    "team_id": self._team_id,
                    "status": response.status_code,
                },
            )

    def ensure_channel_membership(self, channel_id: str, user_id: str) -> None:
        member = self._client.request(
            "GET", f"/api/v4/channels/{quote(channel_id)}/members/{quote(user_id)}"
        )
        if member.ok:
            return

        response = self._client.request(
            "POST", f"/api/v4/channels/{quote(channel_id)}/members", json={"user_id": user_id}
        )
        if not response.ok:
            logger.warning(
                "Unable to add user to channel",
                extra={
                    "user_id": user_id,
                    "channel_id": channel_id,
                    "status": response.status_code,
                },
            )

    # -- sessions ---------------------------------------------------------------

    def create_session(self, user_id: str) -> DownstreamSession:
        response = self._client.request(
            "POST",
            f"/api/v4/users/{quote(user_id)}/sessions",
            json={"device_id": SESSION_DEVICE_ID},
        )
        if not response.ok:
            raise UpstreamError(
                f"Failed to create chat session: {_error_text(response)}",
                upstream_status=response.status_code,
            )
        body = response.json()
        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise UpstreamError("Chat session missing token", upstream_status=response.status_code)
        expires_at = body.get("expires_at")
        return DownstreamSession(
            token=str(token), expires_at=int(expires_at) if expires_at else None
        )

    def get_current_user(self, session_token: str) -> requests.Response:
        return self._client.request("GET", "/api/v4/users/me", session_token=session_token)

    def revoke_session(self, session_token: str) -> None:
        response = self._client.request(
            "POST", "/api/v4/users/logout", session_token=session_token
        )
        if not response.ok:
            logger.info("Chat logout not acknowledged", extra={"status": response.status_code})
