"""Upstream session credential management.

The Tempo API authenticates calls with a short-lived Clerk session id that
is derived from the long-lived ``__client`` token. The session id is cached
for a few minutes and refreshed through the retry controller when it is
missing, expired or explicitly invalidated.
"""

import asyncio
import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from tempoproxy.app.core.http_client import get_http_client
from tempoproxy.app.core.logging import get_logger
from tempoproxy.app.exceptions import (
    NonRetryableUpstreamError,
    RefreshFailedError,
    RetryExhaustedError,
)
from tempoproxy.app.providers.retry import RetryController, RetryPolicy

logger = get_logger(__name__)

# Default cache duration: 5 minutes
SESSION_CACHE_DURATION_MS = 5 * 60 * 1000


class SessionNotFoundError(Exception):
    """The credential endpoint answered but listed no active session."""


@dataclass(frozen=True)
class ClientTokenPayload:
    """Identity fields decoded from the client token."""
    user_id: str
    client_id: str


def parse_client_token(token: Any) -> ClientTokenPayload:
    """Decode the payload of the ``__client`` JWT without verifying it.

    ``sub`` (or ``user_id``) gives the user id and ``client_id`` (or ``azp``,
    ``aud``) the client id. Malformed tokens yield empty strings.

    Args:
        token: JWT in header.payload.signature form

    Returns:
        ClientTokenPayload with the extracted ids
    """
    empty = ClientTokenPayload(user_id="", client_id="")
    if not token or not isinstance(token, str):
        return empty

    parts = token.split(".")
    if len(parts) != 3:
        return empty

    payload_b64 = parts[1]
    padded = payload_b64 + "=" * (-len(payload_b64) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded))
    except (binascii.Error, ValueError):
        return empty
    if not isinstance(payload, dict):
        return empty

    user_id = payload.get("sub") or payload.get("user_id") or ""
    client_id = payload.get("client_id") or payload.get("azp") or payload.get("aud") or ""
    return ClientTokenPayload(user_id=str(user_id), client_id=str(client_id))


class ClerkSessionFetcher:
    """Fetches the active session id from the Clerk client endpoint."""

    def __init__(
        self,
        client_token: str,
        url: str,
        origin: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the fetcher.

        Args:
            client_token: Value of the ``__client`` cookie
            url: Clerk ``/v1/client`` endpoint
            origin: Origin header expected by Clerk
            http_client: Client to use; defaults to the shared client
        """
        self.client_token = client_token
        self.url = url
        self.origin = origin
        self._http_client = http_client

    async def fetch(self) -> httpx.Response:
        """Perform one request to the Clerk client endpoint."""
        client = self._http_client or get_http_client()
        return await client.get(
            self.url,
            headers={
                "Cookie": f"__client={self.client_token}",
                "Origin": self.origin,
            },
        )

    @staticmethod
    def extract_session_id(response: httpx.Response) -> str:
        """Pick the first active session from a Clerk client response.

        Raises:
            SessionNotFoundError: If the body is malformed or no session is active
        """
        try:
            data = response.json()
        except ValueError as e:
            raise SessionNotFoundError(f"Malformed client response: {e}") from e

        client = data.get("response") if isinstance(data, dict) else None
        sessions = client.get("sessions") if isinstance(client, dict) else None
        if not isinstance(sessions, list):
            raise SessionNotFoundError("Client response holds no session list")

        for session in sessions:
            if isinstance(session, dict) and session.get("status") == "active" and session.get("id"):
                return str(session["id"])
        raise SessionNotFoundError("No active session found")


@dataclass(frozen=True)
class SessionCacheEntry:
    """A cached session credential and its absolute expiry (epoch seconds)."""
    token: str
    expires_at: float


class SessionCredentialCache:
    """Single-entry TTL cache for the upstream session credential.

    Reads of a valid entry never suspend. Refreshes are serialized by an
    asyncio.Lock; a caller that waited on the lock takes the entry written
    meanwhile instead of fetching again, unless it forced the refresh. The
    entry is an immutable object replaced by one assignment, so readers see
    either the old or the new credential, never a mix.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[httpx.Response]],
        extract_token: Callable[[httpx.Response], str],
        retry_policy: Optional[RetryPolicy] = None,
        cache_duration_ms: int = SESSION_CACHE_DURATION_MS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            fetch: Coroutine function performing one credential request
            extract_token: Reads the credential from a successful response;
                raises SessionNotFoundError when the response holds none
            retry_policy: Retry settings for refreshes
            cache_duration_ms: Lifetime of a fetched credential
            clock: Wall clock in seconds (injectable for tests)
        """
        policy = retry_policy or RetryPolicy()
        if SessionNotFoundError not in policy.retryable_exceptions:
            policy = RetryPolicy(
                max_retries=policy.max_retries,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
                retryable_exceptions=policy.retryable_exceptions + (SessionNotFoundError,),
            )
        self._fetch = fetch
        self._extract_token = extract_token
        self._controller = RetryController(policy)
        self._cache_duration_ms = cache_duration_ms
        self._clock = clock
        self._entry: Optional[SessionCacheEntry] = None
        self._refresh_lock = asyncio.Lock()

    def _valid_entry(self) -> Optional[SessionCacheEntry]:
        entry = self._entry
        if entry is not None and self._clock() < entry.expires_at:
            return entry
        return None

    async def get_token(self, force_refresh: bool = False) -> str:
        """Return a valid session credential, refreshing it when needed.

        Args:
            force_refresh: Skip the cached entry and fetch a new credential

        Raises:
            RefreshFailedError: If the refresh failed; the previous entry is kept
        """
        if not force_refresh:
            entry = self._valid_entry()
            if entry is not None:
                return entry.token

        seen = self._entry
        async with self._refresh_lock:
            # A forced caller accepts only an entry written after it arrived
            entry = self._valid_entry()
            if entry is not None and (not force_refresh or entry is not seen):
                return entry.token
            return await self._refresh()

    async def _refresh(self) -> str:
        token: Optional[str] = None

        async def attempt() -> httpx.Response:
            nonlocal token
            response = await self._fetch()
            if response.status_code < 400:
                token = self._extract_token(response)
            return response

        try:
            await self._controller.execute(attempt, description="session refresh")
        except RetryExhaustedError as e:
            logger.error(f"Session refresh failed: {e}")
            raise RefreshFailedError(
                attempts=e.attempts, last_status=e.last_status, detail=str(e)
            ) from e
        except NonRetryableUpstreamError as e:
            logger.error(f"Session refresh rejected: {e}")
            raise RefreshFailedError(
                attempts=e.attempts, last_status=e.status, detail=str(e)
            ) from e

        if token is None:
            raise RefreshFailedError(attempts=1, last_status=0, detail="empty credential")

        self._entry = SessionCacheEntry(
            token=token,
            expires_at=self._clock() + self._cache_duration_ms / 1000,
        )
        logger.info(f"Session ID cached: {token[:10]}...")
        return token

    def invalidate(self, token: Optional[str] = None) -> None:
        """Drop the cached credential so the next read refreshes it.

        Args:
            token: The credential the caller saw rejected. When given, the
                entry is dropped only if it still holds that credential.
        """
        entry = self._entry
        if entry is None or (token is not None and entry.token != token):
            return
        self._entry = None

    def get_status(self) -> Dict[str, Any]:
        """Get current cache state."""
        entry = self._entry
        return {
            "cached": entry is not None,
            "valid": self._valid_entry() is not None,
            "expires_at": entry.expires_at if entry is not None else None,
        }
