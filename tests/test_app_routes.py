"""
tests/test_app_routes.py -- Integration tests for /api/v1/app/* (App flow).

Covers:
  - "Bot" app with openai only: openai released, anthropic forbidden
  - IP allow-list 10.0.0.5 queried from 10.0.0.9 (and from 10.0.0.5)
  - Origin allow-list, including a missing Origin header
  - Expired and revoked apps
  - Access counting via /app/status
  - Per-app rate limit
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from auth.models import RateLimitPolicy, User
from auth.store import CredentialStore
from core.config import get_settings
from core.envelope import decrypt_key


def _app_headers(api_key: str, **extra: str) -> dict[str, str]:
    return {"X-App-Key": api_key, **extra}


class TestBotScenario:
    def test_permitted_service(self, client: TestClient, make_app) -> None:
        bot = make_app("Bot", openai=True, anthropic=False)
        resp = client.get("/api/v1/app/keys/openai", headers=_app_headers(bot.api_key))
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "openai"
        assert data["app"] == "Bot"
        assert data["environment"] == "production"
        assert decrypt_key(data["encryptedKey"], bot.api_key) == get_settings().openai_api_key

    def test_unpermitted_service(self, client: TestClient, make_app) -> None:
        bot = make_app("Bot", openai=True, anthropic=False)
        resp = client.get("/api/v1/app/keys/anthropic", headers=_app_headers(bot.api_key))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "service_not_permitted"

    def test_all_returns_only_permitted(self, client: TestClient, make_app) -> None:
        bot = make_app("Bot", openai=True, anthropic=False)
        resp = client.get("/api/v1/app/keys/all", headers=_app_headers(bot.api_key))
        assert resp.status_code == 200
        data = resp.json()
        assert set(data["keys"]) == {"openai"}
        assert data["permissions"] == {"openai": True, "anthropic": False}
        assert data["app"] == "Bot"

    def test_all_with_nothing_accessible_is_404(self, client: TestClient, make_app, monkeypatch) -> None:
        bot = make_app("Bot", openai=True, anthropic=False)
        monkeypatch.setattr(get_settings(), "openai_api_key", "")
        assert client.get("/api/v1/app/keys/all", headers=_app_headers(bot.api_key)).status_code == 404

    def test_unconfigured_permitted_key_is_404(self, client: TestClient, make_app, monkeypatch) -> None:
        bot = make_app("Bot", openai=True)
        monkeypatch.setattr(get_settings(), "openai_api_key", "")
        resp = client.get("/api/v1/app/keys/openai", headers=_app_headers(bot.api_key))
        assert resp.status_code == 404

    def test_x_api_key_accepted_for_apps(self, client: TestClient, make_app) -> None:
        bot = make_app("Bot")
        assert client.get("/api/v1/app/status", headers={"X-API-Key": bot.api_key}).status_code == 200


class TestIpAllowList:
    def test_other_ip_is_403(self, client: TestClient, make_app) -> None:
        app = make_app("Locked", allowed_ips=["10.0.0.5"])
        resp = client.get(
            "/api/v1/app/keys/openai",
            headers=_app_headers(app.api_key, **{"X-Forwarded-For": "10.0.0.9"}),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "ip_not_allowed"

    def test_listed_ip_is_200(self, client: TestClient, make_app) -> None:
        app = make_app("Locked", allowed_ips=["10.0.0.5"])
        resp = client.get(
            "/api/v1/app/keys/openai",
            headers=_app_headers(app.api_key, **{"X-Forwarded-For": "10.0.0.5, 172.16.0.1"}),
        )
        assert resp.status_code == 200

    def test_status_also_enforces_ip(self, client: TestClient, make_app) -> None:
        app = make_app("Locked", allowed_ips=["10.0.0.5"])
        resp = client.get("/api/v1/app/status", headers=_app_headers(app.api_key, **{"X-Forwarded-For": "10.0.0.9"}))
        assert resp.status_code == 403


class TestOriginAllowList:
    def test_matching_origin(self, client: TestClient, make_app) -> None:
        app = make_app("Web", allowed_domains=["example.com"])
        resp = client.get(
            "/api/v1/app/keys/openai",
            headers=_app_headers(app.api_key, Origin="https://app.example.com"),
        )
        assert resp.status_code == 200

    def test_referer_used_when_no_origin(self, client: TestClient, make_app) -> None:
        app = make_app("Web", allowed_domains=["example.com"])
        resp = client.get(
            "/api/v1/app/keys/openai",
            headers=_app_headers(app.api_key, Referer="https://example.com/page"),
        )
        assert resp.status_code == 200

    def test_other_origin_is_403(self, client: TestClient, make_app) -> None:
        app = make_app("Web", allowed_domains=["example.com"])
        resp = client.get("/api/v1/app/keys/openai", headers=_app_headers(app.api_key, Origin="https://evil.test"))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "origin_not_allowed"

    def test_missing_origin_is_403(self, client: TestClient, make_app) -> None:
        app = make_app("Web", allowed_domains=["example.com"])
        assert client.get("/api/v1/app/keys/openai", headers=_app_headers(app.api_key)).status_code == 403


class TestAppAuthentication:
    def test_missing_key(self, client: TestClient) -> None:
        resp = client.get("/api/v1/app/keys/openai")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "missing_credentials"

    def test_user_key_rejected(self, client: TestClient, user: User) -> None:
        assert client.get("/api/v1/app/status", headers=_app_headers(user.api_key)).status_code == 401

    def test_expired_app(self, client: TestClient, make_app) -> None:
        yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        app = make_app("Old", expires_at=yesterday)
        resp = client.get("/api/v1/app/keys/openai", headers=_app_headers(app.api_key))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "expired_api_key"

    def test_future_expiry_is_fine(self, client: TestClient, make_app) -> None:
        tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        app = make_app("Fresh", expires_at=tomorrow)
        assert client.get("/api/v1/app/status", headers=_app_headers(app.api_key)).status_code == 200

    def test_unreadable_stored_expiry_is_401(self, client: TestClient, store: CredentialStore, make_app) -> None:
        """A record edited outside register_app must not turn into a 500."""
        app = make_app("Bad")
        kind, record = store.backend.get(app.api_key)
        record["expires_at"] = "next tuesday"
        store.backend.put(app.api_key, kind, record)
        store.invalidate()
        resp = client.get("/api/v1/app/status", headers=_app_headers(app.api_key))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "expired_api_key"

    def test_revoked_app(self, client: TestClient, store: CredentialStore, make_app) -> None:
        app = make_app("Gone")
        assert client.get("/api/v1/app/status", headers=_app_headers(app.api_key)).status_code == 200
        store.revoke_app("Gone")
        assert client.get("/api/v1/app/status", headers=_app_headers(app.api_key)).status_code == 401


class TestStatus:
    def test_status_reports_counts_without_key(self, client: TestClient, make_app) -> None:
        app = make_app("Bot", environment="staging", rate_limit=RateLimitPolicy(window_ms=300_000, max_requests=50))
        client.get("/api/v1/app/keys/openai", headers=_app_headers(app.api_key))
        client.get("/api/v1/app/keys/anthropic", headers=_app_headers(app.api_key))  # 403 still counts
        resp = client.get("/api/v1/app/status", headers=_app_headers(app.api_key))
        assert resp.status_code == 200
        status = resp.json()["app"]
        assert status["name"] == "Bot"
        assert status["environment"] == "staging"
        assert status["accessCount"] == 3
        assert status["lastAccess"] is not None
        assert status["rateLimit"] == {"windowMs": 300_000, "maxRequests": 50}
        assert status["expiresAt"] is None
        assert app.api_key not in resp.text

    def test_access_is_persisted(self, client: TestClient, store: CredentialStore, make_app) -> None:
        app = make_app("Bot")
        for _ in range(2):
            client.get("/api/v1/app/status", headers=_app_headers(app.api_key))
        _kind, record = store.backend.get(app.api_key)
        assert record["access_count"] == 2


class TestAppRateLimit:
    def test_policy_enforced(self, client: TestClient, make_app) -> None:
        app = make_app("Tight", rate_limit=RateLimitPolicy(window_ms=60_000, max_requests=2))
        for _ in range(2):
            assert client.get("/api/v1/app/status", headers=_app_headers(app.api_key)).status_code == 200
        resp = client.get("/api/v1/app/status", headers=_app_headers(app.api_key))
        assert resp.status_code == 429
        assert 1 <= int(resp.headers["Retry-After"]) <= 60

    def test_limit_is_per_app(self, client: TestClient, make_app) -> None:
        tight = make_app("Tight", rate_limit=RateLimitPolicy(window_ms=60_000, max_requests=1))
        other = make_app("Other", rate_limit=RateLimitPolicy(window_ms=60_000, max_requests=1))
        client.get("/api/v1/app/status", headers=_app_headers(tight.api_key))
        assert client.get("/api/v1/app/status", headers=_app_headers(tight.api_key)).status_code == 429
        assert client.get("/api/v1/app/status", headers=_app_headers(other.api_key)).status_code == 200
