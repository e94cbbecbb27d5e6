"""Approximate token counting for request logs and usage reporting.

The upstream does not report token usage, so counts are estimated from
text length at roughly four characters per token.
"""

import math
from typing import Any, Dict, List

CHARS_PER_TOKEN_ESTIMATE = 4


def estimate_tokens(text: Any) -> int:
    """Estimate the number of tokens in a text string.

    Args:
        text: The text to estimate tokens for

    Returns:
        ceil(len(text) / 4), or 0 for empty or non-string input
    """
    if not text or not isinstance(text, str):
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE)


def count_message_tokens(messages: List[Dict[str, Any]]) -> int:
    """Estimate tokens across the content of chat messages."""
    return sum(estimate_tokens(message.get("content")) for message in messages)
