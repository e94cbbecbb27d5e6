"""Upstream access for the proxy.

This package provides:
- Retry mechanism (RetryPolicy, RetryController, calculate_backoff)
- OpenAI <-> Tempo request translation (ChatRequest, to_upstream, to_openai)

The Tempo provider itself lives in ``tempoproxy.app.providers.tempo``.
"""

from tempoproxy.app.providers.retry import (
    RetryController,
    RetryPolicy,
    calculate_backoff,
    execute_with_retry,
    should_retry,
)
from tempoproxy.app.providers.translate import ChatMessage, ChatRequest, to_openai, to_upstream

__all__ = [
    # Retry
    "RetryController",
    "RetryPolicy",
    "calculate_backoff",
    "execute_with_retry",
    "should_retry",
    # Translation
    "ChatMessage",
    "ChatRequest",
    "to_openai",
    "to_upstream",
]
