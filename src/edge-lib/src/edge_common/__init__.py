"""
edge_common — Shared library for the edge Lambda services.

Error taxonomy, domain records, the injected edge cache, HTTP event helpers
and error reporting. Used by upload_broker and identity_bridge.
"""

from edge_common.cache import DynamoDBEdgeCache, EdgeCache, InMemoryEdgeCache
from edge_common.exceptions import EdgeError, UpstreamError, ValidationError
from edge_common.observability import ErrorReporter

__all__ = [
    "DynamoDBEdgeCache",
    "EdgeCache",
    "EdgeError",
    "ErrorReporter",
    "InMemoryEdgeCache",
    "UpstreamError",
    "ValidationError",
]
