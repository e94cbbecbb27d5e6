"""Retry mechanism with exponential backoff for upstream calls.

This module provides the backoff calculation, the retry eligibility policy
and a controller that drives an upstream operation through both. Delays are
in milliseconds.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type

import httpx

from tempoproxy.app.core.logging import get_logger
from tempoproxy.app.exceptions import NonRetryableUpstreamError, RetryExhaustedError

logger = get_logger(__name__)

DEFAULT_BASE_DELAY = 1000.0
DEFAULT_MAX_DELAY = 10000.0
DEFAULT_MAX_RETRIES = 3

# Status reported for a transport failure (no HTTP response at all)
TRANSPORT_FAILURE = 0

Operation = Callable[[], Awaitable[httpx.Response]]


def calculate_backoff(
    attempt: float,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Calculate the exponential backoff delay for a retry attempt.

    Uses delay = min(base_delay * 2^attempt, max_delay). Fractional attempts
    are floored and negative attempts count as 0.

    Args:
        attempt: The retry attempt number (0-indexed)
        base_delay: Delay for attempt 0, in milliseconds
        max_delay: Upper bound for the delay, in milliseconds

    Returns:
        Delay in milliseconds

    Example:
        >>> calculate_backoff(2, 1000, 10000)
        4000
    """
    try:
        safe_attempt = max(0, math.floor(attempt))
    except OverflowError:
        # math.floor overflows only on +/-inf
        return max_delay if attempt > 0 else min(base_delay, max_delay)
    except (TypeError, ValueError):
        safe_attempt = 0
    # 2**1024 overflows float; anything that large is capped anyway
    if safe_attempt >= 1024:
        return max_delay
    return min(base_delay * (2 ** safe_attempt), max_delay)


def should_retry(status: int, attempt: int, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
    """Decide whether a failed attempt may be retried.

    Args:
        status: HTTP status code, or 0 for transport errors
        attempt: Index of the attempt that just completed (0-indexed)
        max_retries: Maximum number of retries allowed

    Returns:
        True for transport errors and 5xx responses while retries remain
    """
    if attempt >= max_retries:
        return False
    return status == TRANSPORT_FAILURE or 500 <= status < 600


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay between retries in milliseconds (default: 1000)
        max_delay: Maximum delay between retries in milliseconds (default: 10000)
        retryable_exceptions: Exception types treated as transport failures

    Example:
        >>> policy = RetryPolicy(max_retries=5, base_delay=500)
        >>> policy.calculate_delay(attempt=2)
        2000
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    retryable_exceptions: Tuple[Type[BaseException], ...] = (httpx.TransportError,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay in milliseconds after the given failed attempt."""
        return calculate_backoff(attempt, self.base_delay, self.max_delay)

    def is_retryable(self, status: int, attempt: int) -> bool:
        """Check whether a failure with this status may be retried."""
        return should_retry(status, attempt, self.max_retries)


class RetryController:
    """Drives an upstream operation through the retry policy.

    The operation is a zero-argument coroutine function returning an
    httpx.Response. Exceptions listed in ``policy.retryable_exceptions`` are
    treated as transport failures (status 0); any other exception propagates
    unchanged on the attempt that raised it.

    Outcomes:
        - status < 400: the response is returned
        - 4xx (or any status outside 100-599): NonRetryableUpstreamError at once
        - transport error / 5xx with attempts left: sleep, then try again
        - transport error / 5xx on the last attempt: RetryExhaustedError

    Usage:
        controller = RetryController(RetryPolicy(max_retries=3))
        response = await controller.execute(lambda: client.post(url, json=body))
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    async def execute(
        self,
        operation: Operation,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        description: str = "upstream call",
    ) -> httpx.Response:
        """Run ``operation`` until it succeeds, fails terminally or runs out of attempts.

        Args:
            operation: Coroutine function performing one attempt
            max_retries: Override of ``policy.max_retries``
            base_delay: Override of ``policy.base_delay`` (ms)
            max_delay: Override of ``policy.max_delay`` (ms)
            description: Label used in log lines and error messages

        Returns:
            The first response with a status below 400

        Raises:
            NonRetryableUpstreamError: On a non-retryable status
            RetryExhaustedError: When all attempts failed retryably
        """
        retries = self.policy.max_retries if max_retries is None else max_retries
        base = self.policy.base_delay if base_delay is None else base_delay
        cap = self.policy.max_delay if max_delay is None else max_delay

        attempt = 0
        while True:
            cause: Optional[BaseException] = None
            try:
                response = await operation()
                status = response.status_code
            except self.policy.retryable_exceptions as exc:
                cause = exc
                status = TRANSPORT_FAILURE

            if cause is None:
                if status < 400:
                    if attempt > 0:
                        logger.info(
                            f"{description} succeeded on attempt {attempt + 1}",
                            extra={"attempt": attempt + 1},
                        )
                    return response
                if not (500 <= status < 600):
                    raise NonRetryableUpstreamError(
                        status=status,
                        attempts=attempt + 1,
                        body=_body_excerpt(response),
                        description=description,
                    )

            reason = f"{type(cause).__name__}: {cause}" if cause is not None else f"HTTP {status}"

            if not should_retry(status, attempt, retries):
                logger.warning(
                    f"Max retries ({retries}) exceeded for {description}: {reason}",
                    extra={"attempt": attempt + 1},
                )
                raise RetryExhaustedError(
                    attempts=attempt + 1,
                    last_status=status,
                    cause=cause,
                    description=description,
                ) from cause

            delay = calculate_backoff(attempt, base, cap)
            logger.warning(
                f"Retry {attempt + 1}/{retries} for {description} "
                f"after {reason}. Waiting {delay:.0f}ms...",
                extra={"attempt": attempt + 1},
            )
            await asyncio.sleep(delay / 1000)
            attempt += 1


async def execute_with_retry(
    operation: Operation,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> httpx.Response:
    """Run ``operation`` with a one-off RetryController."""
    policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)
    return await RetryController(policy).execute(operation)


def _body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    try:
        return response.text[:limit]
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""
