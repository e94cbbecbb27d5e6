"""Conversion between the OpenAI chat format and the Tempo chat format."""

import time
import uuid
from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, field_validator

from tempoproxy.app.core.tokenizer import estimate_tokens
from tempoproxy.app.exceptions import UnsupportedRequestError

# Models accepted by the upstream chat endpoint
SUPPORTED_MODELS = (
    "claude-4-5-sonnet",
    "claude-4-5-opus",
    "gpt-5.1",
    "gemini-2.5-pro",
)
DEFAULT_MODEL = SUPPORTED_MODELS[0]


class ChatMessage(BaseModel):
    """Message in a chat conversation."""
    role: Literal["system", "user", "assistant"]
    # Plain text or a list of OpenAI content parts
    content: Union[str, List[Dict[str, Any]]]

    def text(self) -> str:
        """Flatten the content to plain text, keeping only text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            str(part.get("text", ""))
            for part in self.content
            if part.get("type") == "text"
        )


class ChatRequest(BaseModel):
    """Request model for chat completions.

    ``reasoning`` and ``search`` are upstream feature toggles passed through
    as-is; they are not part of the OpenAI schema.
    """
    messages: list[ChatMessage] = Field(..., min_length=1)
    model: str = Field(default=DEFAULT_MODEL, min_length=1)
    stream: bool = False
    reasoning: bool = False
    search: bool = False

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v):
        """Ensure messages list is not empty after validation."""
        if not v:
            raise ValueError("messages array cannot be empty")
        return v


def to_upstream(chat_request: ChatRequest, canvas_id: str) -> Dict[str, Any]:
    """Build the upstream request body.

    The last user message becomes the prompt; every other message is sent,
    in order, as chat history.

    Raises:
        UnsupportedRequestError: If no message has the user role
    """
    messages = chat_request.messages
    prompt_index = next(
        (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"),
        None,
    )
    if prompt_index is None:
        raise UnsupportedRequestError("messages must contain at least one user message")

    history = [
        {"role": m.role, "content": m.text()}
        for i, m in enumerate(messages)
        if i != prompt_index
    ]
    return {
        "canvas_id": canvas_id,
        "model": chat_request.model,
        "user_prompt": messages[prompt_index].text(),
        "chat_history": history,
        "reasoning": chat_request.reasoning,
        "search": chat_request.search,
    }


def extract_content(upstream: Any) -> str:
    """Read the assistant text out of an upstream response body."""
    if isinstance(upstream, str):
        return upstream
    if isinstance(upstream, dict):
        for key in ("content", "text", "response", "message"):
            value = upstream.get(key)
            if isinstance(value, str):
                return value
    return ""


def to_openai(upstream: Any, model: str, prompt_tokens: int) -> Dict[str, Any]:
    """Wrap an upstream response as an OpenAI ``chat.completion`` object.

    Token usage is estimated, since the upstream does not report it.
    """
    content = extract_content(upstream)
    completion_tokens = estimate_tokens(content)
    return {
        "id": f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def list_models() -> Dict[str, Any]:
    """OpenAI ``/v1/models`` listing of the supported models."""
    return {
        "object": "list",
        "data": [
            {"id": name, "object": "model", "created": 0, "owned_by": "tempo"}
            for name in SUPPORTED_MODELS
        ],
    }
