"""
upload_broker.handler — Credential Broker Lambda.

Issues SigV4 presigned URLs and drives multipart uploads for the configured
bucket. GET presigning is rate limited per client and refused until the
object's AV scan status is clean.

Routes (all POST, JSON):
    /s3/create        start a multipart upload
    /s3/sign          presign one part
    /s3/complete      submit the part manifest
    /s3/abort         discard a multipart upload
    /s3/presign       presigned GET (rate limited + scan gated)
    /s3/presign-put   presigned PUT
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from edge_common.cache import DynamoDBEdgeCache, EdgeCache
from edge_common.exceptions import EdgeError, NotFoundError, ValidationError
from edge_common.http import (
    cors_headers,
    error_response,
    http_method,
    internal_error_response,
    json_response,
    optional_string,
    parse_json_body,
    preflight,
    request_path,
    require_positive_int,
    require_string,
)
from edge_common.models import UploadPart
from edge_common.observability import ErrorReporter

from .access_gate import AccessGate, RateLimiter, ScanGate, client_identifier
from .config import BrokerConfig
from .object_store import DEFAULT_CONTENT_TYPE, PUT_EXPIRY_BOUNDS, ObjectStoreClient

logger = Logger(service="upload-broker")
tracer = Tracer()

_CORS = cors_headers(allow_headers="content-type, authorization, x-client-id")
_ROUTES = frozenset(
    {"/s3/create", "/s3/sign", "/s3/complete", "/s3/abort", "/s3/presign", "/s3/presign-put"}
)

# Warm-start reuse of the DynamoDB-backed cache
_edge_cache: EdgeCache | None = None


@dataclass(frozen=True)
class BrokerDependencies:
    config: BrokerConfig
    store: ObjectStoreClient
    gate: AccessGate
    reporter: ErrorReporter


def _get_edge_cache(table_name: str | None) -> EdgeCache | None:
    global _edge_cache
    if table_name is None:
        return None
    if _edge_cache is None:
        _edge_cache = DynamoDBEdgeCache(table_name)
    return _edge_cache


def _dependencies() -> BrokerDependencies:
    config = BrokerConfig.from_env()
    store = ObjectStoreClient(config)
    limiter = RateLimiter(
        _get_edge_cache(config.edge_cache_table), limit=config.rate_limit_per_minute
    )
    return BrokerDependencies(
        config=config,
        store=store,
        gate=AccessGate(limiter, ScanGate(store)),
        reporter=ErrorReporter(config.sentry_dsn, service="upload-broker"),
    )


def _parse_parts(value: Any) -> list[UploadPart]:
    if not isinstance(value, list) or not value:
        raise ValidationError("parts must be a non-empty array")
    parts: list[UploadPart] = []
    for raw in value:
        if not isinstance(raw, dict):
            raise ValidationError("each part must be an object")
        part_number = require_positive_int(raw.get("partNumber"), "partNumber")
        etag = require_string(raw, "etag")
        try:
            parts.append(UploadPart(part_number=part_number, etag=etag))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    return parts


def _expires(body: dict[str, Any], default: int) -> int:
    if body.get("expires") is None:
        return default
    return require_positive_int(body["expires"], "expires")


def _handle_create(body: dict[str, Any], deps: BrokerDependencies) -> dict[str, Any]:
    key = require_string(body, "key")
    content_type = optional_string(body, "contentType", DEFAULT_CONTENT_TYPE)
    acl = optional_string(body, "acl")
    upload = deps.store.create_multipart_upload(key, content_type, acl)
    return json_response(200, upload.to_dict(), headers=_CORS)


def _handle_sign(body: dict[str, Any], deps: BrokerDependencies) -> dict[str, Any]:
    key = require_string(body, "key")
    upload_id = require_string(body, "uploadId")
    part_number = require_positive_int(body.get("partNumber"), "partNumber")
    url = deps.store.presign_part(key, upload_id, part_number)
    return json_response(200, {"url": url}, headers=_CORS)


def _handle_complete(body: dict[str, Any], deps: BrokerDependencies) -> dict[str, Any]:
    key = require_string(body, "key")
    upload_id = require_string(body, "uploadId")
    parts = _parse_parts(body.get("parts"))
    deps.store.complete_multipart_upload(key, upload_id, parts)
    return json_response(200, {"ok": True}, headers=_CORS)


def _handle_abort(body: dict[str, Any], deps: BrokerDependencies) -> dict[str, Any]:
    key = require_string(body, "key")
    upload_id = require_string(body, "uploadId")
    deps.store.abort_multipart_upload(key, upload_id)
    return json_response(200, {"ok": True}, headers=_CORS)


def _handle_presign_get(
    event: dict[str, Any], body: dict[str, Any], deps: BrokerDependencies
) -> dict[str, Any]:
    key = require_string(body, "key")
    expires = _expires(body, deps.config.download_ttl_seconds)
    client_id = client_identifier(event)
    logger.append_keys(client_id=client_id)
    deps.gate.authorize_download(client_id, key)
    url = deps.store.presign_get(key, expires)
    return json_response(200, {"url": url}, headers=_CORS)


def _handle_presign_put(body: dict[str, Any], deps: BrokerDependencies) -> dict[str, Any]:
    key = require_string(body, "key")
    content_type = optional_string(body, "contentType", DEFAULT_CONTENT_TYPE)
    expires = _expires(body, PUT_EXPIRY_BOUNDS[1])
    url = deps.store.presign_put(key, content_type, expires)
    return json_response(
        200,
        {"url": url, "key": key, "bucket": deps.store.bucket, "contentType": content_type},
        headers=_CORS,
    )


@logger.inject_lambda_context(
    correlation_id_path=correlation_paths.API_GATEWAY_HTTP, clear_state=True
)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    method = http_method(event)
    path = request_path(event)

    if method == "OPTIONS":
        return preflight(_CORS)

    reporter: ErrorReporter | None = None
    try:
        if method != "POST":
            return json_response(405, {"ok": False, "error": "Unsupported method"}, headers=_CORS)
        if path not in _ROUTES:
            raise NotFoundError("Not found")

        deps = _dependencies()
        reporter = deps.reporter
        body = parse_json_body(event)

        if path == "/s3/create":
            return _handle_create(body, deps)
        if path == "/s3/sign":
            return _handle_sign(body, deps)
        if path == "/s3/complete":
            return _handle_complete(body, deps)
        if path == "/s3/abort":
            return _handle_abort(body, deps)
        if path == "/s3/presign":
            return _handle_presign_get(event, body, deps)
        return _handle_presign_put(body, deps)
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
        return error_response(exc, headers=_CORS)
    except Exception as exc:
        logger.exception("Unhandled upload broker error", extra={"path": path})
        if reporter is None:
            reporter = ErrorReporter(os.environ.get("SENTRY_DSN"), service="upload-broker")
        reporter.capture_exception(exc, tags={"path": path})
        return internal_error_response(headers=_CORS)
