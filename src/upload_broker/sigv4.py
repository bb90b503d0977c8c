"""
upload_broker.sigv4 — AWS Signature Version 4 for S3-compatible stores.

Pure functions: no I/O, no clock. The caller supplies the timestamp, so a
signature is fully determined by (credentials, target, time, request).

Query parameters and headers are ordered lists of (name, value) pairs.
Canonicalisation sorts them explicitly; input order never matters.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import quote, urlsplit

from edge_common.models import SignedRequest

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

_SHA256_EMPTY = hashlib.sha256(b"").hexdigest()
_UNRESERVED = "-_.~"

QueryParams = Iterable[tuple[str, str]]
HeaderList = Iterable[tuple[str, str]]


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str
    region: str = "auto"


@dataclass(frozen=True)
class StoreTarget:
    """Where requests go: endpoint URL, bucket and addressing style."""

    endpoint: str
    bucket: str
    force_path_style: bool = True

    @property
    def scheme(self) -> str:
        return urlsplit(self.endpoint).scheme or "https"

    @property
    def host(self) -> str:
        netloc = urlsplit(self.endpoint).netloc
        if self.force_path_style:
            return netloc
        return f"{self.bucket}.{netloc}"


# ---------------------------------------------------------------------------
# Canonicalisation
# ---------------------------------------------------------------------------


def uri_encode(value: str, *, encode_slash: bool = True) -> str:
    """URI-encode per SigV4: UTF-8, uppercase hex, only A-Z a-z 0-9 - _ . ~ kept."""
    safe = _UNRESERVED if encode_slash else _UNRESERVED + "/"
    return quote(value, safe=safe)


def canonical_path(key: str, *, bucket: str | None = None) -> str:
    """Encode each segment of key independently, keeping "/" separators.

    When bucket is given (path-style addressing) the path is /bucket/key.
    """
    encoded_key = "/".join(uri_encode(segment) for segment in key.split("/"))
    if bucket:
        return f"/{uri_encode(bucket)}/{encoded_key}"
    return f"/{encoded_key}"


def canonical_query(params: QueryParams) -> str:
    pairs = sorted((uri_encode(name), uri_encode(value)) for name, value in params)
    return "&".join(f"{name}={value}" for name, value in pairs)


def canonical_headers(headers: HeaderList) -> tuple[str, str]:
    """Return (canonical_headers, signed_headers).

    canonical_headers ends with a newline after the last header.
    """
    merged: dict[str, list[str]] = {}
    for name, value in headers:
        merged.setdefault(name.strip().lower(), []).append(" ".join(str(value).split()))
    names = sorted(merged)
    canonical = "".join(f"{name}:{','.join(merged[name])}\n" for name in names)
    return canonical, ";".join(names)


def hash_payload(body: bytes | str | None) -> str:
    if not body:
        return _SHA256_EMPTY
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body).hexdigest()


def build_canonical_request(
    method: str,
    path: str,
    query: str,
    headers: str,
    signed_headers: str,
    payload_hash: str,
) -> str:
    return "\n".join([method.upper(), path, query, headers, signed_headers, payload_hash])


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def amz_timestamps(now: datetime) -> tuple[str, str]:
    """Return (amzDate, dateStamp) for a timezone-aware datetime."""
    amz_date = now.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
    return amz_date, amz_date[:8]


def credential_scope(date_stamp: str, region: str) -> str:
    return f"{date_stamp}/{region}/{SERVICE}/aws4_request"


def build_string_to_sign(amz_date: str, scope: str, canonical_request: str) -> str:
    digest = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return "\n".join([ALGORITHM, amz_date, scope, digest])


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_access_key: str, date_stamp: str, region: str) -> bytes:
    k_date = _hmac(f"AWS4{secret_access_key}".encode(), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, SERVICE)
    return _hmac(k_service, "aws4_request")


def sign(signing_key: bytes, string_to_sign: str) -> str:
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def _resource_path(target: StoreTarget, key: str) -> str:
    return canonical_path(key, bucket=target.bucket if target.force_path_style else None)


def presign_url(
    credentials: Credentials,
    target: StoreTarget,
    *,
    method: str,
    key: str,
    expires: int,
    now: datetime,
    query: QueryParams = (),
) -> SignedRequest:
    """Build a presigned URL (query-string auth, host is the only signed header)."""
    amz_date, date_stamp = amz_timestamps(now)
    scope = credential_scope(date_stamp, credentials.region)
    path = _resource_path(target, key)

    params = list(query) + [
        ("X-Amz-Algorithm", ALGORITHM),
        ("X-Amz-Credential", f"{credentials.access_key_id}/{scope}"),
        ("X-Amz-Date", amz_date),
        ("X-Amz-Expires", str(expires)),
        ("X-Amz-SignedHeaders", "host"),
    ]
    query_string = canonical_query(params)
    headers, signed_headers = canonical_headers([("host", target.host)])
    canonical_request = build_canonical_request(
        method, path, query_string, headers, signed_headers, UNSIGNED_PAYLOAD
    )
    string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
    signature = sign(
        derive_signing_key(credentials.secret_access_key, date_stamp, credentials.region),
        string_to_sign,
    )

    url = f"{target.scheme}://{target.host}{path}?{query_string}&X-Amz-Signature={signature}"
    return SignedRequest(
        method=method.upper(),
        url=url,
        resource_path=path,
        canonical_query_string=query_string,
        signed_headers=signed_headers,
        payload_hash=UNSIGNED_PAYLOAD,
        timestamp=amz_date,
        credential_scope=scope,
        signature=signature,
    )


def sign_request(
    credentials: Credentials,
    target: StoreTarget,
    *,
    method: str,
    key: str,
    now: datetime,
    query: QueryParams = (),
    headers: HeaderList = (),
    body: bytes | str | None = None,
) -> SignedRequest:
    """Sign a request with an Authorization header.

    host, x-amz-date and x-amz-content-sha256 are added and signed along with
    every supplied header.
    """
    amz_date, date_stamp = amz_timestamps(now)
    scope = credential_scope(date_stamp, credentials.region)
    path = _resource_path(target, key)
    query_string = canonical_query(query)
    payload_hash = hash_payload(body)

    all_headers = [
        (name, value)
        for name, value in headers
        if name.lower() not in {"host", "x-amz-date", "x-amz-content-sha256", "authorization"}
    ]
    all_headers += [
        ("host", target.host),
        ("x-amz-date", amz_date),
        ("x-amz-content-sha256", payload_hash),
    ]
    header_block, signed_headers = canonical_headers(all_headers)
    canonical_request = build_canonical_request(
        method, path, query_string, header_block, signed_headers, payload_hash
    )
    string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
    signature = sign(
        derive_signing_key(credentials.secret_access_key, date_stamp, credentials.region),
        string_to_sign,
    )
    authorization = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    url = f"{target.scheme}://{target.host}{path}"
    if query_string:
        url = f"{url}?{query_string}"
    return SignedRequest(
        method=method.upper(),
        url=url,
        resource_path=path,
        canonical_query_string=query_string,
        signed_headers=signed_headers,
        payload_hash=payload_hash,
        timestamp=amz_date,
        credential_scope=scope,
        signature=signature,
        headers=tuple(all_headers) + (("Authorization", authorization),),
    )
