"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from tempoproxy.app.core.config import Settings


def test_defaults(monkeypatch) -> None:
    for name in ("MAX_CONCURRENT", "MAX_QUEUE_SIZE", "RATE_LIMIT_ENABLED", "PROXY_API_KEY"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.max_concurrent == 5
    assert settings.max_queue_size == 100
    assert settings.rate_limit_enabled is False
    assert settings.rate_limit_window == 60000
    assert settings.rate_limit_max == 60
    assert settings.retry_max_retries == 3
    assert settings.retry_base_delay == 1000
    assert settings.retry_max_delay == 10000
    assert settings.session_cache_duration == 300000
    assert settings.auth_enabled is False


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MAX_CONCURRENT", "2")
    monkeypatch.setenv("MAX_QUEUE_SIZE", "3")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_MAX", "10")

    settings = Settings(_env_file=None)

    assert settings.max_concurrent == 2
    assert settings.max_queue_size == 3
    assert settings.rate_limit_enabled is True
    assert settings.rate_limit_max == 10


def test_auth_enabled(monkeypatch) -> None:
    monkeypatch.setenv("PROXY_API_KEY", "secret")

    assert Settings(_env_file=None).auth_enabled is True


def test_blank_api_key_disables_auth(monkeypatch) -> None:
    monkeypatch.setenv("PROXY_API_KEY", "   ")

    assert Settings(_env_file=None).auth_enabled is False


@pytest.mark.parametrize(
    ("name", "raw"),
    [
        ("MAX_CONCURRENT", "0"),
        ("MAX_QUEUE_SIZE", "-1"),
        ("RATE_LIMIT_WINDOW", "0"),
        ("RETRY_MAX_RETRIES", "-1"),
        ("RETRY_BASE_DELAY", "-5"),
        ("SESSION_CACHE_DURATION", "0"),
        ("MAX_CONCURRENT", "many"),
    ],
)
def test_invalid_values_rejected(monkeypatch, name: str, raw: str) -> None:
    monkeypatch.setenv(name, raw)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["http://localhost:5173"]', ["http://localhost:5173"]),
        ("*", ["*"]),
        ("[]", []),
        ("", []),
        ("https://a.test, https://b.test", ["https://a.test", "https://b.test"]),
        ("example.test", ["http://example.test", "https://example.test"]),
    ],
)
def test_cors_origins_parsing(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("CORS_ORIGINS", raw)

    assert Settings(_env_file=None).cors_origins == expected
