"""Custom exceptions for the proxy.

Every failure the control plane reports to a caller is one of these types,
so the HTTP layer can pick the status code and retry hint without parsing
messages.
"""

from typing import Any, Dict, Optional


class GatewayException(Exception):
    """Base class for proxy exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and error_code for consistent HTTP
    response handling.
    """
    status_code: int = 500
    error_code: str = "gateway_error"

    def __init__(self, message: str = "Gateway error"):
        self.message = message
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        """Additional fields rendered into the error response body."""
        return {}

    def headers(self) -> Dict[str, str]:
        """Additional response headers for this error."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        body.update(self.extra())
        return body


class CapacityExceededError(GatewayException):
    """Raised when the admission queue's pending sequence is full.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "capacity_exceeded"

    def __init__(self, pending: int, max_queue_size: int):
        self.pending = pending
        self.max_queue_size = max_queue_size
        super().__init__(
            f"Request queue is full ({pending}/{max_queue_size} pending). "
            "Please retry later."
        )

    def extra(self) -> Dict[str, Any]:
        return {"pending": self.pending, "max_queue_size": self.max_queue_size}


class RateLimitedError(GatewayException):
    """Raised when a client has used up its sliding-window quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, retry_after: int, limit: int, remaining: int = 0):
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining
        super().__init__("Rate limit exceeded. Please try again later.")

    def extra(self) -> Dict[str, Any]:
        return {"retry_after": self.retry_after}

    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }


class RetryExhaustedError(GatewayException):
    """Raised when every permitted attempt hit a retryable failure.

    Attributes:
        attempts: Number of attempts performed (initial call included)
        last_status: Last observed status code, 0 for transport errors
        cause: Last transport exception, if the final attempt raised one
    """
    status_code = 502
    error_code = "upstream_unavailable"

    def __init__(
        self,
        attempts: int,
        last_status: int,
        cause: Optional[BaseException] = None,
        description: str = "upstream call",
    ):
        self.attempts = attempts
        self.last_status = last_status
        self.cause = cause
        if cause is not None:
            detail = f"{type(cause).__name__}: {cause}"
        else:
            detail = f"HTTP {last_status}"
        super().__init__(f"{description} failed after {attempts} attempts: {detail}")

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def extra(self) -> Dict[str, Any]:
        return {"attempts": self.attempts, "upstream_status": self.last_status}


class NonRetryableUpstreamError(GatewayException):
    """Raised when the upstream answers with a status that must not be retried.

    Client errors (4xx) are passed through with their own status code;
    anything else maps to HTTP 502 Bad Gateway.
    """
    error_code = "upstream_error"

    def __init__(
        self,
        status: int,
        attempts: int = 1,
        body: str = "",
        description: str = "upstream call",
    ):
        self.status = status
        self.attempts = attempts
        self.body = body
        self.status_code = status if 400 <= status < 500 else 502
        super().__init__(f"{description} returned HTTP {status}")

    def extra(self) -> Dict[str, Any]:
        return {"upstream_status": self.status}


class RefreshFailedError(GatewayException):
    """Raised when the session credential cache cannot obtain a new token.

    Chained (``raise ... from``) to the RetryExhaustedError or
    NonRetryableUpstreamError that ended the refresh.
    """
    status_code = 502
    error_code = "session_refresh_failed"

    def __init__(self, attempts: int, last_status: int, detail: str = ""):
        self.attempts = attempts
        self.last_status = last_status
        message = f"Could not refresh upstream session after {attempts} attempts"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        return {"attempts": self.attempts, "upstream_status": self.last_status}


class AuthenticationError(GatewayException):
    """Raised when API key authentication fails.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error_code = "authentication_failed"

    def __init__(self, detail: str = "Invalid API key"):
        self.detail = detail
        super().__init__(detail)


class InvalidCanvasIdError(GatewayException):
    """Raised when the resolved canvas id is not a UUID.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "invalid_canvas_id"

    def __init__(self, canvas_id: str):
        self.canvas_id = canvas_id
        super().__init__("Canvas ID must be a valid UUID")


class UnsupportedRequestError(GatewayException):
    """Raised for well-formed requests the proxy does not serve.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "unsupported_request"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)
