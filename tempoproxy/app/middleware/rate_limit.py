"""Rate limiting middleware for the proxy.

This module provides a per-client sliding-window rate limiter. Each client
keeps a log of its request timestamps inside the trailing window; expired
timestamps are pruned on every access, and a background sweep drops idle
clients so memory stays bounded by the set of active clients.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tempoproxy.app.core.logging import get_log_context, get_logger
from tempoproxy.app.exceptions import RateLimitedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limiter configuration."""
    enabled: bool
    window_ms: int
    max_requests: int


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    retry_after: Optional[int] = None


class SlidingWindowRateLimiter:
    """In-memory sliding window rate limiter keyed by client id.

    Per-client state is guarded by a per-client asyncio.Lock, so calls for
    the same client serialize their prune/inspect/append sequence while
    different clients never wait on each other.

    Usage:
        limiter = SlidingWindowRateLimiter(enabled=True, window_ms=60000, max_requests=60)
        limiter.start()  # background sweep, needs a running loop

        result = await limiter.check_limit("10.0.0.1")
        if result.allowed:
            await limiter.record_request("10.0.0.1")

        await limiter.stop()
    """

    DEFAULT_CLEANUP_INTERVAL_MS = 60000

    def __init__(
        self,
        enabled: bool = False,
        window_ms: int = 60000,
        max_requests: int = 60,
        cleanup_interval_ms: int = DEFAULT_CLEANUP_INTERVAL_MS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            enabled: When False every check passes and nothing is recorded
            window_ms: Sliding window length in milliseconds
            max_requests: Requests allowed per client inside the window
            cleanup_interval_ms: Interval of the background idle-client sweep
            clock: Wall clock in seconds (injectable for tests)
        """
        self._config = RateLimitConfig(
            enabled=enabled, window_ms=window_ms, max_requests=max_requests
        )
        self._cleanup_interval_ms = cleanup_interval_ms
        self._clock = clock

        self._requests: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _lock_for(self, client_id: str) -> asyncio.Lock:
        lock = self._locks.get(client_id)
        if lock is None:
            lock = self._locks[client_id] = asyncio.Lock()
        return lock

    def _prune(self, client_id: str, now_ms: float) -> Deque[float]:
        """Drop timestamps at or before now - window; returns the live window."""
        window = self._requests.get(client_id)
        if window is None:
            return deque()
        window_start = now_ms - self._config.window_ms
        while window and window[0] <= window_start:
            window.popleft()
        return window

    def _evaluate(self, window: Deque[float], now_ms: float) -> RateLimitResult:
        count = len(window)
        max_requests = self._config.max_requests
        if count >= max_requests:
            oldest = window[0] if window else now_ms
            retry_after_ms = (oldest + self._config.window_ms) - now_ms
            return RateLimitResult(
                allowed=False,
                remaining=0,
                retry_after=max(1, math.ceil(retry_after_ms / 1000)),
            )
        return RateLimitResult(allowed=True, remaining=max_requests - count)

    async def check_limit(self, client_id: str) -> RateLimitResult:
        """Check whether a request from ``client_id`` would be allowed.

        Does not record the request.
        """
        if not self._config.enabled:
            return RateLimitResult(allowed=True, remaining=self._config.max_requests)

        async with self._lock_for(client_id):
            now_ms = self._now_ms()
            window = self._prune(client_id, now_ms)
            return self._evaluate(window, now_ms)

    async def record_request(self, client_id: str) -> None:
        """Record a request for ``client_id`` at the current instant."""
        if not self._config.enabled:
            return

        async with self._lock_for(client_id):
            now_ms = self._now_ms()
            self._prune(client_id, now_ms)
            self._requests.setdefault(client_id, deque()).append(now_ms)

    async def acquire(self, client_id: str) -> RateLimitResult:
        """Check and, if allowed, record a request in one step.

        The result's ``remaining`` accounts for the request just recorded.
        """
        if not self._config.enabled:
            return RateLimitResult(allowed=True, remaining=self._config.max_requests)

        async with self._lock_for(client_id):
            now_ms = self._now_ms()
            window = self._prune(client_id, now_ms)
            result = self._evaluate(window, now_ms)
            if result.allowed:
                self._requests.setdefault(client_id, window).append(now_ms)
                result.remaining -= 1
            return result

    async def get_request_count(self, client_id: str) -> int:
        """Number of non-expired requests recorded for ``client_id``."""
        if not self._config.enabled:
            return 0

        async with self._lock_for(client_id):
            window = self._requests.get(client_id)
            if not window:
                return 0
            window_start = self._now_ms() - self._config.window_ms
            return sum(1 for ts in window if ts > window_start)

    async def cleanup(self) -> int:
        """Remove clients whose whole window has expired.

        Returns:
            Number of clients removed
        """
        removed = 0
        for client_id in list(self._requests):
            lock = self._lock_for(client_id)
            async with lock:
                if not self._prune(client_id, self._now_ms()):
                    self._requests.pop(client_id, None)
                    removed += 1

        stale = [
            client_id for client_id, lock in self._locks.items()
            if client_id not in self._requests and not lock.locked()
        ]
        for client_id in stale:
            del self._locks[client_id]

        if removed:
            logger.debug(f"Rate limiter sweep removed {removed} idle clients")
        return removed

    def start(self) -> None:
        """Start the periodic cleanup task on the running event loop."""
        if not self._config.enabled or self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_cleanup())
        logger.info(
            f"Started rate limiter sweep (interval: {self._cleanup_interval_ms}ms)"
        )

    async def stop(self) -> None:
        """Stop the periodic cleanup task."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped rate limiter sweep")

    async def _run_cleanup(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._cleanup_interval_ms / 1000,
                )
            except asyncio.TimeoutError:
                try:
                    await self.cleanup()
                except Exception as e:
                    logger.error(f"Error during rate limiter sweep: {e}")

    def reset(self) -> None:
        """Drop all recorded requests."""
        self._requests.clear()
        self._locks.clear()

    def get_config(self) -> RateLimitConfig:
        return self._config

    def is_enabled(self) -> bool:
        return self._config.enabled

    def tracked_clients(self) -> int:
        """Number of clients currently holding window state."""
        return len(self._requests)


def get_client_ip(request: Request) -> str:
    """Extract the client address used as the rate limit key.

    Checks X-Forwarded-For (first hop) and X-Real-IP before falling back to
    the socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce per-client rate limits on requests.

    The limiter is read from ``request.app.state.rate_limiter`` so each app
    instance owns its own window state.
    """

    DEFAULT_EXEMPT_PATHS = ("/health",)

    def __init__(self, app, exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS):
        super().__init__(app)
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        limiter: Optional[SlidingWindowRateLimiter] = getattr(
            request.app.state, "rate_limiter", None
        )
        if (
            limiter is None
            or not limiter.is_enabled()
            or request.url.path in self.exempt_paths
            or request.method == "OPTIONS"
        ):
            return await call_next(request)

        client_id = get_client_ip(request)
        result = await limiter.acquire(client_id)
        limit = limiter.get_config().max_requests

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    client_id=client_id,
                    path=request.url.path,
                    retry_after=result.retry_after,
                ),
            )
            error = RateLimitedError(retry_after=result.retry_after or 1, limit=limit)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_dict(),
                headers=error.headers(),
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        return response
