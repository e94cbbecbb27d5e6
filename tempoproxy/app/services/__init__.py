"""Services package for the proxy.

This package provides:
- FIFO admission queue with bounded concurrency
- Session credential cache for the upstream
- Canvas id resolution
- Usage statistics
"""

from tempoproxy.app.services.canvas import get_canvas_id_from_request, validate_canvas_id
from tempoproxy.app.services.request_queue import QueueConfig, QueueStatus, RequestQueue
from tempoproxy.app.services.session import (
    ClerkSessionFetcher,
    SessionCacheEntry,
    SessionCredentialCache,
    SessionNotFoundError,
    parse_client_token,
)
from tempoproxy.app.services.stats import StatsCollector

__all__ = [
    # Canvas
    "get_canvas_id_from_request",
    "validate_canvas_id",
    # Queue
    "QueueConfig",
    "QueueStatus",
    "RequestQueue",
    # Session
    "ClerkSessionFetcher",
    "SessionCacheEntry",
    "SessionCredentialCache",
    "SessionNotFoundError",
    "parse_client_token",
    # Stats
    "StatsCollector",
]
