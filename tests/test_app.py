from storefront.service.runtime import get_runtime
from storefront.storage.errors import StoreUnavailable


def test_security_headers_and_health(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_health_reports_database_outage(client, monkeypatch):
    def down():
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(get_runtime().store, "verify_connection", down)

    response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json()["checks"]["database"]["status"] == "unhealthy"


def test_cors_allows_github_pages(client):
    response = client.options(
        "/products",
        headers={
            "Origin": "https://shop-owner.github.io",
            "Access-Control-Request-Method": "GET",
        },
    )

    assert response.headers["access-control-allow-origin"] == "https://shop-owner.github.io"


def test_cors_ignores_unknown_origin(client):
    response = client.get("/products", headers={"Origin": "https://evil.example.com"})

    assert response.status_code == 200
    assert "access-control-allow-origin" not in response.headers


def test_request_id_is_echoed(client):
    response = client.get("/users/me", headers={"X-Request-ID": "trace-42"})

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "trace-42"
    assert response.json()["request_id"] == "trace-42"


def test_request_id_is_generated(client):
    response = client.get("/products")

    assert response.headers["X-Request-ID"]
