"""
edge_common.http — Lambda HTTP event parsing and JSON response building.

Accepts API Gateway REST (v1) events as well as HTTP API / function URL (v2)
events. Responses are plain Lambda proxy dicts.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from edge_common.exceptions import EdgeError, ScanPendingError, ValidationError

_JSON_CONTENT_TYPE = "application/json; charset=utf-8"


def http_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        method = event.get("requestContext", {}).get("http", {}).get("method")
    return str(method or "").upper()


def request_path(event: dict[str, Any]) -> str:
    path = event.get("rawPath") or event.get("path")
    if not path:
        path = event.get("requestContext", {}).get("http", {}).get("path")
    return str(path or "").rstrip("/") or "/"


def get_header(event: dict[str, Any], name: str) -> str | None:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted and value is not None:
            return str(value)
    return None


def source_ip(event: dict[str, Any]) -> str | None:
    request_context = event.get("requestContext", {})
    ip = request_context.get("http", {}).get("sourceIp")
    if not ip:
        ip = request_context.get("identity", {}).get("sourceIp")
    return str(ip) if ip else None


def request_cookies(event: dict[str, Any]) -> dict[str, str]:
    """Parse request cookies from the v2 "cookies" list or the Cookie header.

    First occurrence of a name wins.
    """
    raw_pairs: list[str] = []
    cookies = event.get("cookies")
    if isinstance(cookies, list):
        raw_pairs.extend(str(c) for c in cookies)
    header = get_header(event, "cookie")
    if header:
        raw_pairs.extend(header.split(";"))

    parsed: dict[str, str] = {}
    for pair in raw_pairs:
        name, sep, value = pair.strip().partition("=")
        if not sep or not name:
            continue
        parsed.setdefault(name.strip(), value.strip())
    return parsed


def parse_json_body(event: dict[str, Any]) -> dict[str, Any]:
    """Decode the request body as a JSON object. An empty body is {}."""
    raw_body = event.get("body")
    if raw_body is None or raw_body == "":
        return {}
    if event.get("isBase64Encoded"):
        try:
            raw_body = base64.b64decode(raw_body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValidationError("Malformed request body") from exc
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise ValidationError("Malformed JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def require_string(body: dict[str, Any], field: str) -> str:
    value = body.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value


def optional_string(body: dict[str, Any], field: str, default: str | None = None) -> str | None:
    value = body.get(field)
    if isinstance(value, str) and value.strip():
        return value
    return default


def require_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def cors_headers(
    *,
    allow_origin: str = "*",
    allow_credentials: bool = False,
    allow_methods: str = "POST, OPTIONS",
    allow_headers: str = "content-type, authorization",
) -> dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": allow_methods,
        "Access-Control-Allow-Headers": allow_headers,
    }
    if allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"
    return headers


def preflight(cors: dict[str, str]) -> dict[str, Any]:
    return {"statusCode": 204, "headers": dict(cors), "body": ""}


def json_response(
    status_code: int,
    body: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    cookies: list[str] | None = None,
) -> dict[str, Any]:
    response_headers = {"Content-Type": _JSON_CONTENT_TYPE}
    if headers:
        response_headers.update(headers)
    response: dict[str, Any] = {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body),
    }
    if cookies:
        # v2 payloads carry cookies separately; v1 reads the header.
        response["cookies"] = list(cookies)
        response_headers["Set-Cookie"] = cookies[0]
        if len(cookies) > 1:
            response["multiValueHeaders"] = {"Set-Cookie": list(cookies)}
    return response


def error_response(exc: EdgeError, *, headers: dict[str, str] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"ok": False, "error": exc.public_message}
    if exc.upstream_status is not None:
        body["upstreamStatus"] = exc.upstream_status
    response_headers = dict(headers or {})
    if isinstance(exc, ScanPendingError):
        response_headers["Retry-After"] = str(exc.retry_after_seconds)
    return json_response(exc.status_code, body, headers=response_headers)


def internal_error_response(*, headers: dict[str, str] | None = None) -> dict[str, Any]:
    return json_response(500, {"ok": False, "error": "Internal server error"}, headers=headers)
