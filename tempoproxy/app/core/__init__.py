"""Core utilities for the proxy application."""

from tempoproxy.app.core.config import Settings, settings
from tempoproxy.app.core.logging import get_logger, sanitize_log, setup_logging
from tempoproxy.app.core.tokenizer import count_message_tokens, estimate_tokens

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "sanitize_log",
    "setup_logging",
    "estimate_tokens",
    "count_message_tokens",
]
