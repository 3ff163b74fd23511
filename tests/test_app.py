"""App-level wiring: health checks, CORS and lifespan."""

from fastapi.testclient import TestClient

from boilerhub import app as app_module
from boilerhub.service.runtime import get_runtime


def test_healthz_reports_every_dependency():
    client = TestClient(app_module.app)
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"] == app_module.__version__
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["session_store"] == {
        "status": "healthy",
        "type": "MemorySessionStore",
    }
    assert body["checks"]["filesystem"] == {"status": "healthy"}


def test_healthz_reports_failing_store(monkeypatch):
    def _down():
        raise ConnectionError("database unreachable")

    monkeypatch.setattr(get_runtime().store, "verify_connection", _down)
    body = TestClient(app_module.app).get("/healthz").json()

    assert body["status"] == "unhealthy"
    assert body["checks"]["database"]["status"] == "unhealthy"
    assert body["checks"]["session_store"]["status"] == "healthy"


def test_cors_preflight_allows_credentials():
    client = TestClient(app_module.app)
    response = client.options(
        "/v1/auth/refresh",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_cors_rejects_unknown_origin():
    client = TestClient(app_module.app)
    response = client.options(
        "/v1/auth/refresh",
        headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
    )
    assert "access-control-allow-origin" not in response.headers


def test_lifespan_builds_runtime():
    with TestClient(app_module.app) as client:
        assert client.get("/v1/categories").status_code == 200
    assert app_module.create_app() is app_module.app
