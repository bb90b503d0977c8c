"""
edge_common.cache — Edge key-value cache with per-entry TTL.

The only shared mutable state of the edge services (rate-limit windows, JWKS
documents) lives behind this abstraction. It is injected into its consumers,
so tests substitute InMemoryEdgeCache with a controllable clock.

Two implementations:
  - DynamoDBEdgeCache: one item per key, PK=CACHE#{key}, SK=VALUE, with a
    "ttl" epoch attribute. DynamoDB reaps expired items lazily, so reads
    also compare ttl against the clock.
  - InMemoryEdgeCache: process-local dict; survives Lambda warm starts only.

Values must be JSON-serialisable. Writes are last-writer-wins; there is no
atomic increment.
"""

from __future__ import annotations

import json
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import boto3
from aws_lambda_powertools import Logger

logger = Logger(service="edge-cache")

_CACHE_PK_PREFIX = "CACHE#"
_CACHE_SK = "VALUE"


class EdgeCache(ABC):
    """get / put / get-or-fetch with a TTL, keyed by string."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if absent or expired."""

    @abstractmethod
    def put(self, key: str, value: Any, *, ttl_seconds: int) -> None:
        """Store value under key for ttl_seconds."""

    def get_or_fetch(self, key: str, fetch: Callable[[], Any], *, ttl_seconds: int) -> Any:
        """Return the cached value, or call fetch(), cache its result and return it."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = fetch()
        self.put(key, value, ttl_seconds=ttl_seconds)
        return value


class InMemoryEdgeCache(EdgeCache):
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(payload)

    def put(self, key: str, value: Any, *, ttl_seconds: int) -> None:
        # Values are held as JSON text; get() always returns a fresh copy.
        self._entries[key] = (self._clock() + ttl_seconds, json.dumps(value))

    def clear(self) -> None:
        self._entries.clear()


class DynamoDBEdgeCache(EdgeCache):
    """
    Edge cache backed by a DynamoDB table with TTL enabled on "ttl".

    Table schema follows the platform single-table convention: string "PK"
    partition key and string "SK" sort key.
    """

    def __init__(
        self,
        table_name: str,
        *,
        dynamodb_resource: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        region = os.environ.get("AWS_REGION", "eu-west-2")
        self._dynamodb: Any = dynamodb_resource or boto3.resource("dynamodb", region_name=region)
        self._table = self._dynamodb.Table(table_name)
        self._clock = clock

    @staticmethod
    def _key(key: str) -> dict[str, str]:
        return {"PK": f"{_CACHE_PK_PREFIX}{key}", "SK": _CACHE_SK}

    def get(self, key: str) -> Any | None:
        response = self._table.get_item(Key=self._key(key))
        item = response.get("Item")
        if not item:
            return None
        if int(item.get("ttl", 0)) <= int(self._clock()):
            logger.debug("Ignoring expired cache item awaiting TTL reaping", cache_key=key)
            return None
        return json.loads(str(item["value"]))

    def put(self, key: str, value: Any, *, ttl_seconds: int) -> None:
        item = {
            **self._key(key),
            "value": json.dumps(value),
            "ttl": int(self._clock()) + ttl_seconds,
        }
        self._table.put_item(Item=item)
