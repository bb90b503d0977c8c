"""
upload_broker.object_store — Presigning and multipart orchestration for one bucket.

URL presigning is local computation. create / complete / abort / head are
signed requests sent to the store with requests; a non-2xx answer surfaces as
UpstreamError carrying the store's status and body. No retries: callers retry
at a higher layer.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

import requests
from aws_lambda_powertools import Logger
from edge_common.exceptions import UpstreamError, UpstreamParseError, ValidationError
from edge_common.http import require_positive_int
from edge_common.models import (
    MAX_PART_NUMBER,
    PART_URL_TTL_SECONDS,
    MultipartUpload,
    UploadPart,
)

from . import sigv4
from .config import BrokerConfig

logger = Logger(service="upload-broker")

GET_EXPIRY_BOUNDS = (60, 3600)
PUT_EXPIRY_BOUNDS = (60, 900)
DEFAULT_CONTENT_TYPE = "application/octet-stream"
_REQUEST_TIMEOUT_SECONDS = 10


def clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return min(max(value, low), high)


def _require_text(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value


def build_complete_manifest(parts: Iterable[UploadPart]) -> str:
    """Render the CompleteMultipartUpload body, parts ascending by number.

    The store rejects manifests that are out of order or repeat a part.
    """
    ordered = sorted(parts, key=lambda part: part.part_number)
    if not ordered:
        raise ValidationError("parts must be a non-empty array")
    numbers = [part.part_number for part in ordered]
    if len(set(numbers)) != len(numbers):
        raise ValidationError("parts must not repeat a partNumber")

    root = ET.Element("CompleteMultipartUpload")
    for part in ordered:
        element = ET.SubElement(root, "Part")
        ET.SubElement(element, "PartNumber").text = str(part.part_number)
        ET.SubElement(element, "ETag").text = part.etag
    return ET.tostring(root, encoding="unicode")


def parse_upload_id(body: str) -> str:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise UpstreamParseError("Unable to parse UploadId from object store response") from exc
    element = root if root.tag.endswith("UploadId") else root.find(".//{*}UploadId")
    if element is None or not (element.text or "").strip():
        raise UpstreamParseError("Unable to parse UploadId from object store response")
    return element.text.strip()


class ObjectStoreClient:
    def __init__(
        self,
        config: BrokerConfig,
        *,
        session: Any = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._credentials = config.credentials
        self._target = config.target
        self._session: Any = session or requests.Session()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def bucket(self) -> str:
        return self._config.bucket

    # -- presigned URLs -----------------------------------------------------

    def _presign(
        self,
        method: str,
        key: str,
        expires: int,
        query: Sequence[tuple[str, str]] = (),
    ) -> str:
        signed = sigv4.presign_url(
            self._credentials,
            self._target,
            method=method,
            key=key,
            expires=expires,
            now=self._clock(),
            query=query,
        )
        return signed.url

    def presign_get(self, key: str, expires: int) -> str:
        _require_text(key, "key")
        return self._presign("GET", key, clamp(expires, GET_EXPIRY_BOUNDS))

    def presign_put(self, key: str, content_type: str | None, expires: int) -> str:
        _require_text(key, "key")
        query = [("response-content-type", content_type)] if content_type else []
        return self._presign("PUT", key, clamp(expires, PUT_EXPIRY_BOUNDS), query)

    def presign_part(self, key: str, upload_id: str, part_number: int) -> str:
        _require_text(key, "key")
        _require_text(upload_id, "uploadId")
        part_number = require_positive_int(part_number, "partNumber")
        if part_number > MAX_PART_NUMBER:
            raise ValidationError(f"partNumber must not exceed {MAX_PART_NUMBER}")
        query = [("partNumber", str(part_number)), ("uploadId", upload_id)]
        return self._presign("PUT", key, PART_URL_TTL_SECONDS, query)

    # -- signed requests ------------------------------------------------------

    def _send(
        self,
        method: str,
        key: str,
        *,
        query: Sequence[tuple[str, str]] = (),
        headers: Sequence[tuple[str, str]] = (),
        body: str | None = None,
    ) -> requests.Response:
        signed = sigv4.sign_request(
            self._credentials,
            self._target,
            method=method,
            key=key,
            now=self._clock(),
            query=query,
            headers=headers,
            body=body,
        )
        return self._session.request(
            method,
            signed.url,
            headers=dict(signed.headers),
            data=body.encode("utf-8") if body else None,
            timeout=_REQUEST_TIMEOUT_SECONDS,
        )

    def create_multipart_upload(
        self, key: str, content_type: str | None = None, acl: str | None = None
    ) -> MultipartUpload:
        _require_text(key, "key")
        headers = [("Content-Type", content_type or DEFAULT_CONTENT_TYPE)]
        if acl:
            headers.append(("x-amz-acl", acl))
        response = self._send("POST", key, query=[("uploads", "")], headers=headers)
        if not response.ok:
            raise UpstreamError(
                f"createMultipartUpload failed: {response.status_code} {response.text}",
                upstream_status=response.status_code,
            )
        upload_id = parse_upload_id(response.text)
        logger.info("Multipart upload created", extra={"key": key, "upload_id": upload_id})
        return MultipartUpload(key=key, upload_id=upload_id, bucket=self.bucket)

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Iterable[UploadPart]
    ) -> MultipartUpload:
        _require_text(key, "key")
        _require_text(upload_id, "uploadId")
        ordered = tuple(sorted(parts, key=lambda part: part.part_number))
        manifest = build_complete_manifest(ordered)
        response = self._send(
            "POST",
            key,
            query=[("uploadId", upload_id)],
            headers=[("Content-Type", "application/xml")],
            body=manifest,
        )
        # S3 can report a failed completion inside a 200 body.
        if not response.ok or "<Error>" in response.text:
            raise UpstreamError(
                f"completeMultipartUpload failed: {response.status_code} {response.text}",
                upstream_status=response.status_code,
            )
        logger.info(
            "Multipart upload completed",
            extra={"key": key, "upload_id": upload_id, "parts": len(ordered)},
        )
        return MultipartUpload(key=key, upload_id=upload_id, bucket=self.bucket, parts=ordered)

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        _require_text(key, "key")
        _require_text(upload_id, "uploadId")
        response = self._send("DELETE", key, query=[("uploadId", upload_id)])
        if response.status_code == 404:
            logger.info("Multipart upload already gone", extra={"key": key, "upload_id": upload_id})
            return
        if not response.ok:
            raise UpstreamError(
                f"abortMultipartUpload failed: {response.status_code} {response.text}",
                upstream_status=response.status_code,
            )

    def head_object(self, key: str) -> requests.Response:
        _require_text(key, "key")
        return self._send("HEAD", key)
