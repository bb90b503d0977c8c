from __future__ import annotations

import json
import time
from typing import Any
from unittest.mock import MagicMock
from urllib.parse import urlsplit

import pytest
import requests
from edge_common.cache import InMemoryEdgeCache

from src.identity_bridge import handler as bridge_handler
from src.identity_bridge.config import BridgeConfig, CookieSettings
from src.identity_bridge.jwt_verifier import JwtVerifier
from src.identity_bridge.provisioner import ChatPlatformClient, UpstreamProvisioner
from tests.unit.fakes import (
    AUDIENCE,
    ISSUER,
    JWKS_URL,
    FakeLambdaContext,
    FakeSession,
    SigningKey,
    make_response,
)

CHAT_URL = "https://chat.example.com"
ORIGIN = "https://app.example.com"
SESSION_EXPIRES_MS = 1_900_000_000_000

USER = {
    "id": "u1",
    "email": "jane.doe@example.com",
    "username": "jane_doe_123456",
    "first_name": "Jane",
    "last_name": "Doe",
    "auth_service": "oidc",
    "auth_data": "user_2abcdefXYZ123456",
}


class Upstreams:
    """JWKS endpoint and Mattermost API behind one FakeSession."""

    def __init__(self, signing_key: SigningKey) -> None:
        self.signing_key = signing_key
        self.me_status = 200
        self.logout_error: Exception | None = None
        self.session = FakeSession(self._respond)

    def _respond(self, method: str, url: str, _kwargs: dict[str, Any]) -> requests.Response:
        if url == JWKS_URL:
            return make_response(200, {"keys": [self.signing_key.jwk]})
        path = urlsplit(url).path
        if (method, path) == ("GET", "/api/v4/users/email/jane.doe%40example.com"):
            return make_response(200, USER)
        if (method, path) == ("PUT", "/api/v4/users/u1/patch"):
            return make_response(200, USER)
        if (method, path) == ("GET", "/api/v4/users/u1/teams"):
            return make_response(200, [{"id": "team-1"}])
        if (method, path) == ("POST", "/api/v4/users/u1/sessions"):
            return make_response(200, {"token": "mm-token", "expires_at": SESSION_EXPIRES_MS})
        if (method, path) == ("GET", "/api/v4/users/me"):
            return make_response(self.me_status, USER if self.me_status == 200 else {})
        if (method, path) == ("POST", "/api/v4/users/logout"):
            if self.logout_error:
                raise self.logout_error
            return make_response(200, {"status": "OK"})
        return make_response(404, {})


@pytest.fixture
def upstreams(signing_key: SigningKey) -> Upstreams:
    return Upstreams(signing_key)


@pytest.fixture
def reporter() -> MagicMock:
    return MagicMock()


@pytest.fixture
def deps(
    monkeypatch: pytest.MonkeyPatch, upstreams: Upstreams, reporter: MagicMock
) -> bridge_handler.BridgeDependencies:
    config = BridgeConfig(
        jwks_url=JWKS_URL,
        issuer=ISSUER,
        audience=AUDIENCE,
        chat_base_url=CHAT_URL,
        chat_admin_token="admin-token",
        team_id="team-1",
        cookie=CookieSettings(domain=".example.com"),
    )
    client = ChatPlatformClient(CHAT_URL, "admin-token", session=upstreams.session)
    dependencies = bridge_handler.BridgeDependencies(
        config=config,
        verifier=JwtVerifier(InMemoryEdgeCache(), session=upstreams.session),
        provisioner=UpstreamProvisioner(client, team_id="team-1"),
        reporter=reporter,
    )
    monkeypatch.setattr(bridge_handler, "_dependencies", lambda: dependencies)
    return dependencies


def _event(
    path: str,
    body: dict[str, Any] | None = None,
    *,
    method: str = "POST",
    cookie: str | None = None,
) -> dict[str, Any]:
    headers = {"origin": ORIGIN, "content-type": "application/json"}
    if cookie is not None:
        headers["cookie"] = cookie
    return {
        "rawPath": path,
        "headers": headers,
        "requestContext": {"requestId": "req-1", "http": {"method": method, "path": path}},
        "body": None if body is None else json.dumps(body),
    }


def _invoke(event: dict[str, Any]) -> dict[str, Any]:
    return bridge_handler.lambda_handler(event, FakeLambdaContext())


def _body(response: dict[str, Any]) -> dict[str, Any]:
    return json.loads(response["body"])


# ---------------------------------------------------------------------------
# /exchange
# ---------------------------------------------------------------------------


def test_exchange_sets_session_cookie(deps, signing_key: SigningKey, upstreams) -> None:
    response = _invoke(_event("/exchange", {"token": signing_key.mint()}))

    assert response["statusCode"] == 200
    body = _body(response)
    assert body["ok"] is True
    assert body["expiresAt"] == SESSION_EXPIRES_MS
    assert body["user"] == {
        "id": "u1",
        "email": "jane.doe@example.com",
        "username": "jane_doe_123456",
        "first_name": "Jane",
        "last_name": "Doe",
    }

    cookie = response["headers"]["Set-Cookie"]
    assert cookie.startswith("MMSESSION=mm-token; ")
    assert "HttpOnly" in cookie
    assert "Secure" in cookie
    assert "SameSite=None" in cookie
    assert "Domain=.example.com" in cookie
    assert response["cookies"] == [cookie]

    assert response["headers"]["Access-Control-Allow-Origin"] == ORIGIN
    assert response["headers"]["Access-Control-Allow-Credentials"] == "true"
    assert upstreams.session.calls_to("POST", "/sessions")[0].kwargs["json"] == {
        "device_id": "clerk-sso"
    }


def test_exchange_with_expired_token_is_401_without_cookie(
    deps, signing_key: SigningKey, upstreams
) -> None:
    now = int(time.time())
    token = signing_key.mint(iat=now - 7200, nbf=now - 7200, exp=now - 60)
    response = _invoke(_event("/exchange", {"token": token}))

    assert response["statusCode"] == 401
    assert _body(response) == {"ok": False, "error": "Invalid token"}
    assert "Set-Cookie" not in response["headers"]
    assert "cookies" not in response
    assert not [c for c in upstreams.session.calls if c.url.startswith(CHAT_URL)]


def test_exchange_wrong_audience_is_401(deps, signing_key: SigningKey) -> None:
    response = _invoke(_event("/exchange", {"token": signing_key.mint(aud="nope")}))
    assert response["statusCode"] == 401


def test_exchange_missing_token_is_400(deps) -> None:
    response = _invoke(_event("/exchange", {}))
    assert response["statusCode"] == 400
    assert _body(response)["error"] == "token is required"


def test_exchange_upstream_failure_passes_status(deps, signing_key: SigningKey, upstreams) -> None:
    default_responder = upstreams.session.responder

    def _respond(method: str, url: str, kwargs: dict[str, Any]) -> requests.Response:
        if url.endswith("/sessions"):
            return make_response(503, "maintenance")
        return default_responder(method, url, kwargs)

    upstreams.session.responder = _respond
    response = _invoke(_event("/exchange", {"token": signing_key.mint()}))
    assert response["statusCode"] == 503
    assert _body(response)["upstreamStatus"] == 503
    assert "Set-Cookie" not in response["headers"]


# ---------------------------------------------------------------------------
# /refresh and /logout
# ---------------------------------------------------------------------------


def test_refresh_without_cookie_is_401(deps) -> None:
    response = _invoke(_event("/refresh"))
    assert response["statusCode"] == 401
    assert _body(response) == {"ok": False, "error": "No session cookie"}


def test_refresh_with_valid_session(deps, upstreams) -> None:
    response = _invoke(_event("/refresh", cookie="MMSESSION=mm-token"))
    assert response["statusCode"] == 200
    assert _body(response)["user"]["id"] == "u1"
    me_call = upstreams.session.calls_to("GET", "/users/me")[0]
    assert me_call.kwargs["headers"]["Authorization"] == "Bearer mm-token"


def test_refresh_with_revoked_session(deps, upstreams) -> None:
    upstreams.me_status = 401
    response = _invoke(_event("/refresh", cookie="MMSESSION=stale"))
    assert response["statusCode"] == 401
    assert _body(response) == {"ok": False, "error": "Session invalid", "upstreamStatus": 401}


def test_logout_revokes_and_clears_cookie(deps, upstreams) -> None:
    response = _invoke(_event("/logout", cookie="MMSESSION=mm-token"))
    assert response["statusCode"] == 200
    assert _body(response) == {"ok": True}
    assert "Max-Age=0" in response["headers"]["Set-Cookie"]
    assert upstreams.session.calls_to("POST", "/users/logout")


def test_logout_without_cookie_still_clears(deps, upstreams) -> None:
    response = _invoke(_event("/logout"))
    assert response["statusCode"] == 200
    assert response["headers"]["Set-Cookie"].startswith("MMSESSION=; ")
    assert not upstreams.session.calls


def test_logout_survives_upstream_outage(deps, upstreams) -> None:
    upstreams.logout_error = requests.ConnectionError("down")
    response = _invoke(_event("/logout", cookie="MMSESSION=mm-token"))
    assert response["statusCode"] == 200
    assert "Max-Age=0" in response["headers"]["Set-Cookie"]


# ---------------------------------------------------------------------------
# Routing and failures
# ---------------------------------------------------------------------------


def test_preflight_echoes_origin(deps) -> None:
    response = _invoke(_event("/exchange", method="OPTIONS"))
    assert response["statusCode"] == 204
    assert response["headers"]["Access-Control-Allow-Origin"] == ORIGIN
    assert response["headers"]["Access-Control-Allow-Credentials"] == "true"
    assert response["headers"]["Vary"] == "Origin"


@pytest.mark.parametrize("path,method", [("/nope", "POST"), ("/exchange", "GET")])
def test_unknown_route_is_404(deps, path: str, method: str) -> None:
    response = _invoke(_event(path, method=method))
    assert response["statusCode"] == 404
    assert _body(response) == {"ok": False, "error": "Not found"}
    assert response["headers"]["Access-Control-Allow-Origin"] == ORIGIN


def test_unexpected_error_is_reported(deps, reporter: MagicMock, monkeypatch) -> None:
    def _explode(*_args: Any, **_kwargs: Any) -> None:
        raise KeyError("id")

    monkeypatch.setattr(deps.provisioner, "get_current_user", _explode)
    response = _invoke(_event("/refresh", cookie="MMSESSION=mm-token"))
    assert response["statusCode"] == 500
    assert _body(response) == {"ok": False, "error": "Internal server error"}
    reporter.capture_exception.assert_called_once()


def test_missing_configuration_is_500(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("CLERK_JWKS_URL", "CLERK_ISSUER", "CLERK_AUDIENCE", "MATTERMOST_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    response = _invoke(_event("/refresh", cookie="MMSESSION=x"))
    assert response["statusCode"] == 500
