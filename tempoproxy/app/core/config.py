import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    """Accept a JSON list, "*", or comma/space separated origins."""
    if raw is None:
        return []
    if isinstance(raw, list):
        return [s for s in (str(v).strip() for v in raw) if s]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [s for s in (str(v).strip() for v in parsed) if s]

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if part == "*":
            return ["*"]
        # Browsers send the scheme in Origin; accept both for a bare host
        candidates = [part] if "://" in part else [f"http://{part}", f"https://{part}"]
        origins.extend(c for c in candidates if c not in origins)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Durations for the control plane (rate limit window, retry delays, session
    cache) are in milliseconds.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Upstream credentials
    tempo_client_token: str = ""  # Long-lived __client cookie value
    tempo_canvas_id: str = ""  # Default canvas when the request names none

    # Optional API key required from clients (disabled when empty)
    proxy_api_key: str = ""

    # Upstream endpoints
    upstream_chat_url: str = "https://app.tempo.build/api/chat"
    clerk_client_url: str = (
        "https://clerk.tempo.build/v1/client?_clerk_js_version=5.56.0-snapshot.v20250530185653"
    )
    clerk_origin: str = "https://app.tempo.build"

    # Admission queue
    max_concurrent: int = 5
    max_queue_size: int = 100

    # Rate limiting (sliding window, per client IP)
    rate_limit_enabled: bool = False
    rate_limit_window: int = 60000
    rate_limit_max: int = 60
    rate_limit_cleanup_interval: int = 60000

    # Retry with exponential backoff
    retry_max_retries: int = 3
    retry_base_delay: float = 1000.0
    retry_max_delay: float = 10000.0

    # Session credential cache
    session_cache_duration: int = 5 * 60 * 1000

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 10.0  # Time to establish connection
    httpx_read_timeout: float = 120.0  # Upstream completions can be slow
    httpx_write_timeout: float = 10.0  # Time to send request data
    httpx_pool_timeout: float = 5.0  # Time to acquire connection from pool
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    # NoDecode: plain values like "example.com" must not go through JSON parsing
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("max_concurrent", "max_queue_size", "rate_limit_max")
    @classmethod
    def validate_limits_positive(cls, v: int) -> int:
        """Validate queue and quota limits are positive."""
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_window",
        "rate_limit_cleanup_interval",
        "session_cache_duration",
    )
    @classmethod
    def validate_durations_positive(cls, v: int) -> int:
        """Validate millisecond durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("retry_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate the retry budget is not negative."""
        if v < 0:
            raise ValueError("retry_max_retries must not be negative")
        return v

    @field_validator("retry_base_delay", "retry_max_delay")
    @classmethod
    def validate_delay_not_negative(cls, v: float) -> float:
        """Validate retry delays are not negative."""
        if v < 0:
            raise ValueError("retry delays must not be negative")
        return v

    @field_validator("httpx_connect_timeout", "httpx_read_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @property
    def auth_enabled(self) -> bool:
        """Whether clients must present PROXY_API_KEY."""
        return bool(self.proxy_api_key.strip())

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
