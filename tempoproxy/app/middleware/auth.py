import hmac
import re
from typing import Mapping, Optional

from fastapi import Request

from tempoproxy.app.exceptions import AuthenticationError

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
_BARE_BEARER_RE = re.compile(r"^Bearer\s*$", re.IGNORECASE)


def extract_api_key(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Extract the client API key from request headers.

    Checks, in order: ``Authorization: Bearer <key>``, a raw Authorization
    value (anything but a bare "Bearer"), then ``x-api-key``.

    Args:
        headers: Request headers (case-insensitive mapping)

    Returns:
        The API key, or None if no header carries one
    """
    if not headers:
        return None

    auth = headers.get("authorization")
    if auth:
        match = _BEARER_RE.match(auth)
        if match and match.group(1).strip():
            return match.group(1).strip()
        trimmed = auth.strip()
        if trimmed and not _BARE_BEARER_RE.match(trimmed):
            return trimmed

    x_api_key = headers.get("x-api-key")
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()

    return None


def validate_api_key(provided_key: Optional[str], configured_key: Optional[str]) -> bool:
    """Check a provided API key against the configured one.

    With no configured key authentication is disabled and every request
    passes.
    """
    if not configured_key:
        return True
    if not provided_key:
        return False
    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(provided_key.encode(), configured_key.encode())


def require_api_key(request: Request) -> Optional[str]:
    """FastAPI dependency enforcing PROXY_API_KEY.

    Args:
        request: The incoming request

    Returns:
        The validated key, or None when authentication is disabled

    Raises:
        AuthenticationError: 401 if the key is missing or wrong
    """
    configured = request.app.state.settings.proxy_api_key.strip()
    if not configured:
        return None

    provided = extract_api_key(request.headers)
    if not validate_api_key(provided, configured):
        # Same message for missing and wrong keys to prevent enumeration
        raise AuthenticationError("Invalid API key")
    return provided
