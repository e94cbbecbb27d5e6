"""Structured logging configuration for the proxy.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments, plus
redaction of credentials and conversation content before anything is
written out.
"""

import json
import logging
import logging.config
import re
import sys
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from tempoproxy.app.core.config import Settings, settings


# Patterns removed from every log line
SENSITIVE_PATTERNS = [
    re.compile(r"Bearer\s+[A-Za-z0-9\-_.]+", re.IGNORECASE),
    # JWTs: three base64url segments, header and payload start with "eyJ"
    re.compile(r"eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+"),
    re.compile(r"sk-[A-Za-z0-9]{20,}"),
    re.compile(r"pk-[A-Za-z0-9]{20,}"),
    re.compile(r"api[_-]?key[\"\s:=]+[\"']?[A-Za-z0-9\-_]{16,}[\"']?", re.IGNORECASE),
    re.compile(r"x-api-key[\"\s:=]+[\"']?[A-Za-z0-9\-_]{8,}[\"']?", re.IGNORECASE),
    re.compile(r"authorization[\"\s:=]+[\"']?[A-Za-z0-9\-_\s.]{8,}[\"']?", re.IGNORECASE),
    re.compile(r"__client[\"\s:=]+[\"']?[A-Za-z0-9\-_.]{20,}[\"']?", re.IGNORECASE),
]

# Conversation content fields, replaced after the credential patterns
_CONTENT_REPLACEMENTS = [
    (re.compile(r'"content"\s*:\s*"[^"]*"'), '"content":"[REDACTED]"'),
    (re.compile(r'"content"\s*:\s*\[[^\]]*\]'), '"content":[REDACTED]'),
    (re.compile(r'"user_prompt"\s*:\s*"[^"]*"'), '"user_prompt":"[REDACTED]"'),
    (re.compile(r'"chat_history"\s*:\s*\[[^\]]*\]'), '"chat_history":[REDACTED]'),
]

_LONG_CONTENT = re.compile(r'"content"\s*:\s*"(?!\[REDACTED\]")[^"]{10,}"')


def sanitize_log(entry: Union[str, Dict[str, Any], None]) -> str:
    """Remove tokens, API keys and message content from a log entry.

    Args:
        entry: Log line or a dict that is serialized to JSON first

    Returns:
        The redacted text ("" for unsupported input)
    """
    if isinstance(entry, dict):
        text = json.dumps(entry, default=str, ensure_ascii=False)
    elif isinstance(entry, str):
        text = entry
    else:
        return ""

    for pattern in SENSITIVE_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    for pattern, replacement in _CONTENT_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return text


def contains_sensitive_data(text: Any) -> bool:
    """Check whether text still holds credentials or message content."""
    if not text or not isinstance(text, str):
        return False
    if any(pattern.search(text) for pattern in SENSITIVE_PATTERNS):
        return True
    return bool(_LONG_CONTENT.search(text))


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.
    """

    STANDARD_FIELDS = ["name", "levelname", "message", "timestamp"]

    # Contextual fields for request tracking
    CONTEXT_FIELDS = [
        "request_id",    # Request ID from X-Request-ID header
        "client_id",     # Rate limit key (client IP)
        "model",         # Requested model
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
        "duration_ms",   # Request duration in milliseconds
        "attempt",       # Upstream attempt number
    ]

    _RESERVED = {
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    }

    def __init__(self, fields: Optional[list] = None, datefmt: Optional[str] = None):
        super().__init__(datefmt=datefmt)
        self.fields = fields or (self.STANDARD_FIELDS + self.CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "-":
                log_data[field] = value

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    Adds default values for request_id, client_id and the other contextual
    fields if not already present in the log record.
    """

    CONTEXT_DEFAULTS = {field: None for field in JSONFormatter.CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


class RedactingFilter(logging.Filter):
    """Logging filter that redacts the rendered message of each record.

    The record's message is rendered once and replaced by its sanitized
    form, so formatters downstream never see the raw text.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        rendered = record.getMessage()
        cleaned = sanitize_log(rendered)
        if cleaned != rendered:
            record.msg = cleaned
            record.args = None
        return True


def get_logging_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Args:
        config: Settings to read level and format from; defaults to the
            environment-loaded ones

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    config = config or settings
    log_format = getattr(config, "log_format", "text").lower()
    log_level = getattr(config, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - request_id=%(request_id)s - client_id=%(client_id)s - model=%(model)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "tempoproxy.app.core.logging.JSONFormatter",
        }
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context", "redact"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context", "redact"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "tempoproxy.app.core.logging.ContextFilter",
            },
            "redact": {
                "()": "tempoproxy.app.core.logging.RedactingFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "tempoproxy": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging(config: Optional[Settings] = None) -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config(config))

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str = "tempoproxy") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    client_id: Optional[str] = None,
    model: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    Example:
        >>> logger.info(
        ...     "Request queued",
        ...     extra=get_log_context(request_id="abc123", client_id="10.0.0.1")
        ... )
    """
    context: Dict[str, Any] = {
        "request_id": request_id,
        "client_id": client_id,
        "model": model,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}


@dataclass
class RequestLogData:
    """Fields summarized in one request log line."""

    method: str
    path: str
    model: Optional[str] = None
    reasoning: bool = False
    search: bool = False
    canvas_id: Optional[str] = None
    duration_ms: Optional[int] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    status: Optional[int] = None
    success: Optional[bool] = None
    error: Optional[str] = None


def format_request_log(data: RequestLogData) -> str:
    """Render a request summary line.

    Example output:
        [2026-01-01T00:00:00+00:00] POST /v1/chat/completions model=claude [reasoning]
        canvas=0a1b2c3d... tokens(in=12,out=40) 830ms status=200 ✓
    """
    parts = [
        f"[{datetime.now(timezone.utc).isoformat()}]",
        f"{data.method} {data.path}",
    ]

    if data.model:
        model_info = f"model={data.model}"
        flags = [name for name, on in (("reasoning", data.reasoning), ("search", data.search)) if on]
        if flags:
            model_info += f" [{','.join(flags)}]"
        parts.append(model_info)

    if data.canvas_id:
        parts.append(f"canvas={data.canvas_id[:8]}...")

    if data.input_tokens is not None or data.output_tokens is not None:
        token_info = []
        if data.input_tokens is not None:
            token_info.append(f"in={data.input_tokens}")
        if data.output_tokens is not None:
            token_info.append(f"out={data.output_tokens}")
        parts.append(f"tokens({','.join(token_info)})")

    if data.duration_ms is not None:
        parts.append(f"{data.duration_ms}ms")
    if data.status is not None:
        parts.append(f"status={data.status}")
    if data.success is not None:
        parts.append("✓" if data.success else "✗")
    if data.error:
        parts.append(f'error="{data.error}"')

    return " ".join(parts)


def log_request(data: RequestLogData, logger: Optional[logging.Logger] = None) -> None:
    """Log a sanitized request summary line."""
    (logger or get_logger("tempoproxy.requests")).info(sanitize_log(format_request_log(data)))
