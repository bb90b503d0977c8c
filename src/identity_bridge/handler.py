"""
identity_bridge.handler — Identity Bridge Lambda.

Exchanges a Clerk session JWT for a Mattermost session carried in an
HttpOnly cookie, and refreshes or revokes that cookie.

Routes:
    POST /exchange   {token} -> Set-Cookie + {ok, user, expiresAt}
    POST /refresh    cookie  -> {ok, user} | 401
    POST /logout     cookie? -> expired cookie + {ok: true}
    OPTIONS *        CORS preflight (origin echoed, credentials allowed)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import requests
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from edge_common.cache import DynamoDBEdgeCache, EdgeCache, InMemoryEdgeCache
from edge_common.exceptions import AuthError, EdgeError, NotFoundError, SessionInvalidError
from edge_common.http import (
    cors_headers,
    error_response,
    get_header,
    http_method,
    internal_error_response,
    json_response,
    parse_json_body,
    preflight,
    request_path,
    require_string,
)
from edge_common.models import DownstreamUser
from edge_common.observability import ErrorReporter

from .config import BridgeConfig
from .cookies import build_expired_cookie, build_session_cookie, read_session_cookie
from .jwt_verifier import JwtVerifier
from .provisioner import ChatPlatformClient, UpstreamProvisioner

logger = Logger(service="identity-bridge")
tracer = Tracer()

# Global clients: reused across warm starts
_jwks_cache: EdgeCache | None = None
_http_session: requests.Session | None = None


@dataclass(frozen=True)
class BridgeDependencies:
    config: BridgeConfig
    verifier: JwtVerifier
    provisioner: UpstreamProvisioner
    reporter: ErrorReporter


def _get_jwks_cache(table_name: str | None) -> EdgeCache:
    """DynamoDB-backed when configured, else process-local."""
    global _jwks_cache
    if _jwks_cache is None:
        _jwks_cache = DynamoDBEdgeCache(table_name) if table_name else InMemoryEdgeCache()
    return _jwks_cache


def _get_http_session() -> requests.Session:
    global _http_session
    if _http_session is None:
        _http_session = requests.Session()
    return _http_session


def _dependencies() -> BridgeDependencies:
    config = BridgeConfig.from_env()
    session = _get_http_session()
    client = ChatPlatformClient(config.chat_base_url, config.chat_admin_token, session=session)
    return BridgeDependencies(
        config=config,
        verifier=JwtVerifier(_get_jwks_cache(config.edge_cache_table), session=session),
        provisioner=UpstreamProvisioner(
            client, team_id=config.team_id, default_channel_id=config.default_channel_id
        ),
        reporter=ErrorReporter(config.sentry_dsn, service="identity-bridge", session=session),
    )


def _cors(event: dict[str, Any]) -> dict[str, str]:
    return cors_headers(allow_origin=get_header(event, "origin") or "*", allow_credentials=True)


def _handle_exchange(event: dict[str, Any], deps: BridgeDependencies) -> dict[str, Any]:
    body = parse_json_body(event)
    token = require_string(body, "token")
    config = deps.config

    claims = deps.verifier.verify(
        token, issuer=config.issuer, audience=config.audience, jwks_url=config.jwks_url
    )
    logger.append_keys(sub=claims.subject)

    user = deps.provisioner.ensure_user(claims)
    session = deps.provisioner.create_session(user.id)
    cookie = build_session_cookie(session.token, config.cookie, expires_at_ms=session.expires_at)

    logger.info("Session exchanged", extra={"user_id": user.id, "username": user.username})
    return json_response(
        200,
        {"ok": True, "user": user.to_public(), "expiresAt": session.expires_at},
        headers=_cors(event),
        cookies=[cookie],
    )


def _handle_refresh(event: dict[str, Any], deps: BridgeDependencies) -> dict[str, Any]:
    session_token = read_session_cookie(event, deps.config.cookie.name)
    if not session_token:
        raise SessionInvalidError("No session cookie")

    me = deps.provisioner.get_current_user(session_token)
    if not me.ok:
        raise SessionInvalidError("Session invalid", upstream_status=me.status_code)
    user = DownstreamUser.from_api(me.json())
    return json_response(200, {"ok": True, "user": user.to_public()}, headers=_cors(event))


def _handle_logout(event: dict[str, Any], deps: BridgeDependencies) -> dict[str, Any]:
    session_token = read_session_cookie(event, deps.config.cookie.name)
    if session_token:
        try:
            deps.provisioner.revoke_session(session_token)
        except requests.RequestException:
            # The cookie is cleared regardless; the session expires upstream.
            logger.warning("Chat logout request failed", exc_info=True)
    return json_response(
        200,
        {"ok": True},
        headers=_cors(event),
        cookies=[build_expired_cookie(deps.config.cookie)],
    )


@logger.inject_lambda_context(
    correlation_id_path=correlation_paths.API_GATEWAY_HTTP, clear_state=True
)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    method = http_method(event)
    path = request_path(event)
    cors = _cors(event)

    if method == "OPTIONS":
        return preflight(cors)

    reporter: ErrorReporter | None = None
    try:
        if method != "POST" or path not in {"/exchange", "/refresh", "/logout"}:
            raise NotFoundError("Not found")

        deps = _dependencies()
        reporter = deps.reporter
        if path == "/exchange":
            return _handle_exchange(event, deps)
        if path == "/refresh":
            return _handle_refresh(event, deps)
        return _handle_logout(event, deps)
    except AuthError as exc:
        logger.warning(
            "Authentication failed",
            extra={"path": path, "kind": exc.kind, "reason": exc.message},
        )
        return error_response(exc, headers=cors)
    except EdgeError as exc:
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "Request rejected",
            extra={
                "path": path,
                "code": exc.code,
                "status_code": exc.status_code,
                "upstream_status": exc.upstream_status,
                "reason": exc.message,
            },
        )
        return error_response(exc, headers=cors)
    except Exception as exc:
        logger.exception("Unhandled identity bridge error", extra={"path": path})
        if reporter is None:
            reporter = ErrorReporter(os.environ.get("SENTRY_DSN"), service="identity-bridge")
        reporter.capture_exception(exc, tags={"path": path})
        return internal_error_response(headers=cors)
