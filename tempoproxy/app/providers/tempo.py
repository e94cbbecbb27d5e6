"""Tempo chat provider.

Sends translated chat requests to the Tempo chat endpoint, authenticated
with the cached Clerk session, and converts the answer back to the OpenAI
format.
"""

from typing import Any, Dict, Optional

import httpx

from tempoproxy.app.core.http_client import get_http_client
from tempoproxy.app.core.logging import get_logger
from tempoproxy.app.core.tokenizer import count_message_tokens
from tempoproxy.app.exceptions import NonRetryableUpstreamError
from tempoproxy.app.providers.retry import RetryController, RetryPolicy
from tempoproxy.app.providers.translate import ChatRequest, to_openai, to_upstream
from tempoproxy.app.services.session import SessionCredentialCache

logger = get_logger(__name__)


class TempoProvider:
    """Upstream chat provider backed by a session credential cache.

    If http_client is provided, it will be used for all requests; otherwise
    the shared client from the application lifespan is used.
    """

    def __init__(
        self,
        chat_url: str,
        session_cache: SessionCredentialCache,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the provider.

        Args:
            chat_url: Upstream chat endpoint
            session_cache: Source of the session credential
            retry_policy: Retry settings for upstream calls
            http_client: Optional HTTP client overriding the shared one
        """
        self.chat_url = chat_url
        self._sessions = session_cache
        self._controller = RetryController(retry_policy)
        self._http_client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    async def _post(self, payload: Dict[str, Any], token: str) -> httpx.Response:
        client = self._get_client()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        return await self._controller.execute(
            lambda: client.post(self.chat_url, headers=headers, json=payload),
            description="upstream chat",
        )

    async def chat_completion(self, chat_request: ChatRequest, canvas_id: str) -> Dict[str, Any]:
        """Send a non-streaming chat completion request.

        A 401 from the upstream means the session was revoked before its
        cache entry expired. The rejected credential is dropped unless a
        concurrent request already replaced it, and the call is repeated once
        with the credential the cache then yields.

        Args:
            chat_request: Validated OpenAI-format request
            canvas_id: Target canvas

        Returns:
            OpenAI ``chat.completion`` object

        Raises:
            RefreshFailedError: If no session credential could be obtained
            RetryExhaustedError: If every attempt failed retryably
            NonRetryableUpstreamError: On a non-retryable upstream status
        """
        payload = to_upstream(chat_request, canvas_id)
        token = await self._sessions.get_token()
        try:
            response = await self._post(payload, token)
        except NonRetryableUpstreamError as e:
            if e.status != 401:
                raise
            logger.warning("Upstream rejected the session, refreshing credential")
            self._sessions.invalidate(token)
            token = await self._sessions.get_token()
            response = await self._post(payload, token)

        try:
            upstream = response.json()
        except ValueError:
            upstream = response.text

        prompt_tokens = count_message_tokens(
            [{"content": m.text()} for m in chat_request.messages]
        )
        return to_openai(upstream, chat_request.model, prompt_tokens)
