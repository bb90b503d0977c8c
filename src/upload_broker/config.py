"""Environment configuration for the Credential Broker."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from edge_common.exceptions import ConfigurationError

from .sigv4 import Credentials, StoreTarget

_REQUIRED = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc


@dataclass(frozen=True)
class BrokerConfig:
    endpoint: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    region: str = "auto"
    force_path_style: bool = True
    download_ttl_seconds: int = 300
    rate_limit_per_minute: int = 60
    edge_cache_table: str | None = None
    sentry_dsn: str | None = None

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
            region=self.region,
        )

    @property
    def target(self) -> StoreTarget:
        return StoreTarget(
            endpoint=self.endpoint.rstrip("/"),
            bucket=self.bucket,
            force_path_style=self.force_path_style,
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BrokerConfig:
        env = os.environ if env is None else env
        missing = [name for name in _REQUIRED if not env.get(name)]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        return cls(
            endpoint=env["S3_ENDPOINT"],
            bucket=env["S3_BUCKET"],
            access_key_id=env["S3_ACCESS_KEY_ID"],
            secret_access_key=env["S3_SECRET_ACCESS_KEY"],
            region=env.get("S3_REGION") or "auto",
            # Anything but an explicit "false" keeps path-style addressing.
            force_path_style=env.get("FORCE_PATH_STYLE", "true").lower() != "false",
            download_ttl_seconds=_int_env(env, "DOWNLOAD_TTL_SECONDS", 300),
            rate_limit_per_minute=_int_env(env, "RATE_LIMIT_REQUESTS_PER_MINUTE", 60),
            edge_cache_table=env.get("EDGE_CACHE_TABLE") or None,
            sentry_dsn=env.get("SENTRY_DSN") or None,
        )
