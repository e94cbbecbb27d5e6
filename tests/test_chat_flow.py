"""End-to-end tests for the proxy HTTP surface with a mocked upstream."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from tempoproxy.app.core.config import Settings
from tempoproxy.app.exceptions import CapacityExceededError
from tempoproxy.app.main import create_app

CLERK_URL = "https://clerk.test/v1/client"
CHAT_URL = "https://upstream.test/api/chat"
CANVAS = "11111111-1111-4111-8111-111111111111"

CHAT_BODY = {"model": "gpt-5.1", "messages": [{"role": "user", "content": "hello"}]}


def make_settings(**overrides) -> Settings:
    params = dict(
        _env_file=None,
        tempo_client_token="client-token",
        tempo_canvas_id=CANVAS,
        clerk_client_url=CLERK_URL,
        upstream_chat_url=CHAT_URL,
        retry_base_delay=0,
        retry_max_delay=0,
    )
    params.update(overrides)
    return Settings(**params)


def mock_clerk(status: int = 200):
    body = {"response": {"sessions": [{"id": "sess_1", "status": "active"}]}}
    return respx.get(CLERK_URL).mock(return_value=httpx.Response(status, json=body))


@respx.mock
def test_chat_completion_success():
    mock_clerk()
    chat_route = respx.post(CHAT_URL).mock(
        return_value=httpx.Response(200, json={"content": "Hello from upstream"})
    )

    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)
        stats = client.get("/stats").json()

    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "chat.completion"
    assert data["choices"][0]["message"]["content"] == "Hello from upstream"
    assert "X-Request-ID" in resp.headers
    assert chat_route.calls.last.request.headers["Authorization"] == "Bearer sess_1"
    assert stats["total_requests"] == 1
    assert stats["success_count"] == 1
    assert stats["model_usage"] == {"gpt-5.1": 1}
    assert stats["queue"]["active"] == 0


@respx.mock
def test_session_is_reused_between_requests():
    clerk_route = mock_clerk()
    respx.post(CHAT_URL).mock(return_value=httpx.Response(200, json={"content": "ok"}))

    with TestClient(create_app(make_settings())) as client:
        for _ in range(3):
            assert client.post("/v1/chat/completions", json=CHAT_BODY).status_code == 200

    assert clerk_route.call_count == 1


@respx.mock
def test_canvas_header_overrides_default():
    mock_clerk()
    chat_route = respx.post(CHAT_URL).mock(
        return_value=httpx.Response(200, json={"content": "ok"})
    )
    other = "22222222-2222-4222-8222-222222222222"

    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers={"x-canvas-id": other})

    assert resp.status_code == 200
    assert other.encode() in chat_route.calls.last.request.content


def test_invalid_canvas_id():
    with TestClient(create_app(make_settings())) as client:
        resp = client.post(
            "/v1/chat/completions", json=CHAT_BODY, headers={"x-canvas-id": "not-a-uuid"}
        )

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_canvas_id"


def test_missing_default_canvas():
    with TestClient(create_app(make_settings(tempo_canvas_id=""))) as client:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)

    assert resp.status_code == 400


def test_streaming_rejected():
    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True})

    assert resp.status_code == 400
    assert resp.json()["error"] == "unsupported_request"


def test_invalid_json():
    with TestClient(create_app(make_settings())) as client:
        resp = client.post(
            "/v1/chat/completions",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

    assert resp.status_code == 400


def test_validation_error():
    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json={"messages": []})

    assert resp.status_code == 422


@respx.mock
def test_upstream_unavailable():
    mock_clerk()
    chat_route = respx.post(CHAT_URL).mock(return_value=httpx.Response(503))

    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)
        stats = client.get("/stats").json()

    assert resp.status_code == 502
    assert resp.json()["error"] == "upstream_unavailable"
    assert resp.json()["attempts"] == 4
    assert chat_route.call_count == 4
    assert stats["error_count"] == 1
    assert stats["queue"]["active"] == 0


@respx.mock
def test_upstream_client_error_passed_through():
    mock_clerk()
    respx.post(CHAT_URL).mock(return_value=httpx.Response(404, text="no such canvas"))

    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)

    assert resp.status_code == 404
    assert resp.json()["error"] == "upstream_error"
    assert resp.json()["upstream_status"] == 404


@respx.mock
def test_session_refresh_failure():
    mock_clerk(status=401)
    chat_route = respx.post(CHAT_URL).mock(return_value=httpx.Response(200, json={}))

    with TestClient(create_app(make_settings())) as client:
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)

    assert resp.status_code == 502
    assert resp.json()["error"] == "session_refresh_failed"
    assert chat_route.call_count == 0


@respx.mock
def test_rate_limited():
    mock_clerk()
    respx.post(CHAT_URL).mock(return_value=httpx.Response(200, json={"content": "ok"}))
    settings = make_settings(rate_limit_enabled=True, rate_limit_max=1)

    with TestClient(create_app(settings)) as client:
        first = client.post("/v1/chat/completions", json=CHAT_BODY)
        second = client.post(
            "/v1/chat/completions",
            json=CHAT_BODY,
            headers={"Origin": "https://ui.example.com", "X-Request-ID": "req-429"},
        )
        health = client.get("/health")

    assert first.status_code == 200
    assert first.headers["X-RateLimit-Remaining"] == "0"
    assert second.status_code == 429
    assert int(second.headers["Retry-After"]) >= 1
    assert second.headers["X-Request-ID"] == "req-429"
    assert "access-control-allow-origin" in second.headers
    assert health.status_code == 200


def test_queue_full():
    app = create_app(make_settings())
    error = CapacityExceededError(pending=100, max_queue_size=100)

    with TestClient(app) as client:
        with patch.object(app.state.request_queue, "enqueue", AsyncMock(side_effect=error)):
            resp = client.post("/v1/chat/completions", json=CHAT_BODY)

    assert resp.status_code == 503
    assert resp.json()["error"] == "capacity_exceeded"


def test_unexpected_error_returns_500():
    app = create_app(make_settings())

    with TestClient(app, raise_server_exceptions=False) as client:
        with patch.object(app.state.request_queue, "enqueue", AsyncMock(side_effect=KeyError("x"))):
            resp = client.post("/v1/chat/completions", json=CHAT_BODY)

    assert resp.status_code == 500
    assert resp.json()["error"] == "internal_error"
    assert resp.json()["message"] == "Internal server error"
