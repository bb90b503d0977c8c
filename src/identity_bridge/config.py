"""Environment configuration for the Identity Bridge."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from edge_common.exceptions import ConfigurationError

DEFAULT_COOKIE_NAME = "MMSESSION"
DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60

_REQUIRED = (
    "CLERK_JWKS_URL",
    "CLERK_ISSUER",
    "CLERK_AUDIENCE",
    "MATTERMOST_BASE_URL",
    "MATTERMOST_ADMIN_TOKEN",
    "MATTERMOST_TEAM_ID",
    "SESSION_COOKIE_DOMAIN",
)


@dataclass(frozen=True)
class CookieSettings:
    domain: str
    name: str = DEFAULT_COOKIE_NAME
    secure: bool = True
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS


@dataclass(frozen=True)
class BridgeConfig:
    jwks_url: str
    issuer: str
    audience: str
    chat_base_url: str
    chat_admin_token: str
    team_id: str
    cookie: CookieSettings
    default_channel_id: str | None = None
    edge_cache_table: str | None = None
    sentry_dsn: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BridgeConfig:
        env = os.environ if env is None else env
        missing = [name for name in _REQUIRED if not env.get(name)]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        ttl_raw = env.get("SESSION_TTL_SECONDS")
        try:
            ttl = int(ttl_raw) if ttl_raw else DEFAULT_SESSION_TTL_SECONDS
        except ValueError:
            ttl = DEFAULT_SESSION_TTL_SECONDS

        return cls(
            jwks_url=env["CLERK_JWKS_URL"],
            issuer=env["CLERK_ISSUER"],
            audience=env["CLERK_AUDIENCE"],
            chat_base_url=env["MATTERMOST_BASE_URL"].rstrip("/"),
            chat_admin_token=env["MATTERMOST_ADMIN_TOKEN"],
            team_id=env["MATTERMOST_TEAM_ID"],
            default_channel_id=env.get("MATTERMOST_DEFAULT_CHANNEL_ID") or None,
            cookie=CookieSettings(
                domain=env["SESSION_COOKIE_DOMAIN"],
                name=env.get("SESSION_COOKIE_NAME") or DEFAULT_COOKIE_NAME,
                secure=env.get("SESSION_COOKIE_SECURE", "true").lower() != "false",
                ttl_seconds=ttl,
            ),
            edge_cache_table=env.get("EDGE_CACHE_TABLE") or None,
            sentry_dsn=env.get("SENTRY_DSN") or None,
        )
