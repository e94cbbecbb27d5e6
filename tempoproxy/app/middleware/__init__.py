"""Middleware package for the proxy."""

from tempoproxy.app.middleware.auth import require_api_key
from tempoproxy.app.middleware.rate_limit import RateLimitMiddleware, SlidingWindowRateLimiter
from tempoproxy.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_api_key",
    "RateLimitMiddleware",
    "SlidingWindowRateLimiter",
    "RequestIdMiddleware",
    "get_request_id",
]
