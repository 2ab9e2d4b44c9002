"""
tests/test_health.py -- Integration tests for GET /api/v1/health and the
app-wide middleware (security headers, global rate limit, error envelope).
"""

from __future__ import annotations

from api.main import VERSION


def test_health_returns_200(client):
    """Health endpoint returns status, version and timestamp."""
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == VERSION
    assert data["timestamp"]


def test_health_no_auth_required(client):
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_security_headers_on_every_response(client):
    for resp in (client.get("/api/v1/health"), client.get("/api/v1/keys/openai")):
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-XSS-Protection"] == "1; mode=block"
        assert "max-age=" in resp.headers["Strict-Transport-Security"]


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/v1/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"


def test_global_limit_per_ip(client):
    headers = {"X-Forwarded-For": "203.0.113.50"}
    for _ in range(100):
        assert client.get("/api/v1/health", headers=headers).status_code == 200
    resp = client.get("/api/v1/health", headers=headers)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert resp.headers["X-Frame-Options"] == "DENY"

    other = client.get("/api/v1/health", headers={"X-Forwarded-For": "203.0.113.51"})
    assert other.status_code == 200
