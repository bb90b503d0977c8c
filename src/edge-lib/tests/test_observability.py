from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests
from edge_common.observability import ErrorReporter, build_envelope, build_event, parse_dsn

DSN = "https://publickey123@o1.ingest.sentry.io/4505"


def _raise() -> Exception:
    try:
        raise RuntimeError("kaboom")
    except RuntimeError as exc:
        return exc


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=1)
    yield pool
    pool.shutdown(wait=True)


def test_parse_dsn() -> None:
    assert parse_dsn(DSN) == ("https://o1.ingest.sentry.io/api/4505/envelope/", "publickey123")


def test_parse_dsn_with_port_and_prefix() -> None:
    envelope_url, key = parse_dsn("http://k@sentry.internal:9000/sentry/7")
    assert envelope_url == "http://sentry.internal:9000/sentry/api/7/envelope/"
    assert key == "k"


@pytest.mark.parametrize("dsn", ["https://sentry.io/1", "https://k@sentry.io/"])
def test_parse_dsn_invalid(dsn: str) -> None:
    with pytest.raises(ValueError):
        parse_dsn(dsn)


def test_build_event() -> None:
    event = build_event(_raise(), service="upload-broker", tags={"path": "/s3/presign"})
    assert event["level"] == "error"
    assert event["tags"] == {"service": "upload-broker", "path": "/s3/presign"}
    value = event["exception"]["values"][0]
    assert value["type"] == "RuntimeError"
    assert value["value"] == "kaboom"
    assert value["stacktrace"]["frames"][-1]["function"] == "_raise"


def test_build_envelope() -> None:
    event = build_event(_raise(), service="s")
    header, item_header, payload = build_envelope(event, dsn=DSN).split(b"\n")

    assert json.loads(header)["event_id"] == event["event_id"]
    assert json.loads(header)["dsn"] == DSN
    assert json.loads(item_header) == {
        "type": "event",
        "content_type": "application/json",
        "length": len(payload),
    }
    assert json.loads(payload) == event


def test_disabled_without_dsn() -> None:
    session = MagicMock()
    reporter = ErrorReporter(None, service="s", session=session)
    assert reporter.enabled is False
    assert reporter.capture_exception(_raise()) is None
    session.request.assert_not_called()


def test_capture_posts_envelope(executor: ThreadPoolExecutor) -> None:
    session = MagicMock()
    session.request.return_value.ok = True
    reporter = ErrorReporter(DSN, service="identity-bridge", session=session, executor=executor)
    reporter.capture_exception(_raise(), tags={"path": "/exchange"}).result(timeout=5)

    args, kwargs = session.request.call_args
    assert args == ("POST", "https://o1.ingest.sentry.io/api/4505/envelope/")
    assert "sentry_key=publickey123" in kwargs["headers"]["X-Sentry-Auth"]
    assert kwargs["headers"]["Content-Type"] == "application/x-sentry-envelope"
    event = json.loads(kwargs["data"].split(b"\n")[2])
    assert event["exception"]["values"][0]["type"] == "RuntimeError"
    assert event["tags"]["path"] == "/exchange"
    assert kwargs["timeout"] == 2


def test_capture_returns_before_tracker_answers(executor: ThreadPoolExecutor) -> None:
    release = threading.Event()

    def _slow_request(*_args: Any, **_kwargs: Any) -> MagicMock:
        release.wait(timeout=5)
        return MagicMock(ok=True)

    session = MagicMock()
    session.request.side_effect = _slow_request
    future = ErrorReporter(DSN, service="s", session=session, executor=executor).capture_exception(
        _raise()
    )

    assert not future.done()
    release.set()
    future.result(timeout=5)
    session.request.assert_called_once()


def test_capture_never_raises(executor: ThreadPoolExecutor) -> None:
    session = MagicMock()
    session.request.side_effect = requests.ConnectTimeout("slow")
    reporter = ErrorReporter(DSN, service="s", session=session, executor=executor)
    assert reporter.capture_exception(_raise()).result(timeout=5) is None

    broken = ErrorReporter("not a dsn", service="s", session=MagicMock(), executor=executor)
    assert broken.capture_exception(_raise()).result(timeout=5) is None
