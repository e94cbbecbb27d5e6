from fastapi.testclient import TestClient

from tempoproxy.app.core.config import Settings
from tempoproxy.app.main import create_app


def _client() -> TestClient:
    return TestClient(create_app(Settings(_env_file=None, max_concurrent=2, max_queue_size=3)))


def test_health():
    resp = _client().get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["components"]["queue"] == {"pending": 0, "active": 0, "max_concurrent": 2}
    assert data["components"]["session"]["cached"] is False


def test_models():
    resp = _client().get("/v1/models")
    assert resp.status_code == 200
    assert resp.json()["object"] == "list"
    assert len(resp.json()["data"]) > 0


def test_stats_includes_limits():
    data = _client().get("/stats").json()
    assert data["total_requests"] == 0
    assert data["queue"]["max_queue_size"] == 3
    assert data["rate_limit"]["enabled"] is False
