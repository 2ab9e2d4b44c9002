"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth/*.

These tests exercise the full stack: FastAPI routing -> rate-limit and auth
dependencies -> CredentialStore -> response model serialization (camelCase).

Fixtures used (from conftest.py):
  - client:        TestClient over the real app with an isolated store
  - user:          registered "alice"
  - user_password: alice's password
"""

from __future__ import annotations

from dataclasses import replace

from fastapi.testclient import TestClient

import api.routes.v1.auth as auth_routes
from auth.models import User
from auth.store import CredentialStore
from auth.tokens import authenticate_user
from core.config import get_settings


def _register(client: TestClient, username: str = "bob", password: str = "pw-bob-123", master: str | None = None):
    body = {"username": username, "password": password, "masterKey": master or get_settings().master_key}
    return client.post("/api/v1/auth/register", json=body)


class TestRegister:
    def test_register_returns_201_with_api_key(self, client: TestClient) -> None:
        resp = _register(client)
        assert resp.status_code == 201
        data = resp.json()
        assert data["username"] == "bob"
        assert data["apiKey"].startswith("ks_")
        assert data["userId"]
        assert data["message"] == "User registered successfully"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_bad_master_key_is_403(self, client: TestClient) -> None:
        resp = _register(client, master="wrong-master")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "invalid_master_key"

    def test_duplicate_username_is_409(self, client: TestClient) -> None:
        assert _register(client).status_code == 201
        resp = _register(client, password="another-pw")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "username_taken"

    def test_missing_field_is_400(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={"username": "bob", "password": "pw"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "masterKey" in error["message"]

    def test_empty_field_is_400(self, client: TestClient) -> None:
        resp = _register(client, username="")
        assert resp.status_code == 400


class TestLogin:
    def test_login_returns_token_and_key(self, client: TestClient, user: User, user_password: str) -> None:
        resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": user_password})
        assert resp.status_code == 200
        data = resp.json()
        assert data["apiKey"] == user.api_key
        assert data["expiresIn"] == 86400
        assert data["token"].count(".") == 2
        assert resp.headers["Cache-Control"] == "no-store"

    def test_wrong_password_is_401(self, client: TestClient, user: User) -> None:
        resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_unknown_user_matches_wrong_password(self, client: TestClient, user: User) -> None:
        unknown = client.post("/api/v1/auth/login", json={"username": "mallory", "password": "wrong"})
        wrong = client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_token_opens_me(self, client: TestClient, user: User, user_password: str) -> None:
        token = client.post("/api/v1/auth/login", json={"username": "alice", "password": user_password}).json()[
            "token"
        ]
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["userId"] == user.id
        assert data["username"] == "alice"
        assert data["lastAccess"] is not None

    def test_rotation_racing_login_returns_new_key(
        self, client: TestClient, store: CredentialStore, user: User, user_password: str, monkeypatch
    ) -> None:
        """Key rotated between the password check and the touch: login still succeeds."""
        rotated: list[str] = []

        def racing_authenticate(store_: CredentialStore, username: str, password: str) -> User | None:
            found = authenticate_user(store_, username, password)
            rotated.append(store_.rotate_api_key(replace(found)))
            return found

        monkeypatch.setattr(auth_routes, "authenticate_user", racing_authenticate)
        resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": user_password})
        assert resp.status_code == 200
        assert resp.json()["apiKey"] == rotated[0] != user.api_key

    def test_record_deleted_mid_login_is_401(
        self, client: TestClient, store: CredentialStore, user: User, user_password: str, monkeypatch
    ) -> None:
        def vanishing_authenticate(store_: CredentialStore, username: str, password: str) -> User | None:
            found = authenticate_user(store_, username, password)
            store_.backend.delete(found.api_key)
            store_.invalidate()
            return found

        monkeypatch.setattr(auth_routes, "authenticate_user", vanishing_authenticate)
        resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": user_password})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"


class TestMe:
    def test_requires_bearer(self, client: TestClient, user: User) -> None:
        assert client.get("/api/v1/auth/me").status_code == 401
        # An API key is not a session.
        assert client.get("/api/v1/auth/me", headers={"X-API-Key": user.api_key}).status_code == 401

    def test_invalid_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"


class TestRotate:
    def test_rotation_kills_old_key(self, client: TestClient, user: User, user_password: str) -> None:
        old_key = user.api_key
        resp = client.post("/api/v1/auth/rotate-api-key", json={"username": "alice", "password": user_password})
        assert resp.status_code == 200
        new_key = resp.json()["apiKey"]
        assert new_key != old_key
        assert new_key.startswith("ks_")

        assert client.get("/api/v1/keys/openai", headers={"X-API-Key": old_key}).status_code == 401
        assert client.get("/api/v1/keys/openai", headers={"X-API-Key": new_key}).status_code == 200

    def test_rotation_requires_password(self, client: TestClient, user: User) -> None:
        resp = client.post("/api/v1/auth/rotate-api-key", json={"username": "alice", "password": "wrong"})
        assert resp.status_code == 401
        assert client.get("/api/v1/keys/openai", headers={"X-API-Key": user.api_key}).status_code == 200


class TestAuthRateLimit:
    def test_sixth_attempt_is_429(self, client: TestClient, user: User) -> None:
        headers = {"X-Forwarded-For": "198.51.100.20"}
        body = {"username": "alice", "password": "wrong"}
        for _ in range(5):
            assert client.post("/api/v1/auth/login", json=body, headers=headers).status_code == 401
        resp = client.post("/api/v1/auth/login", json=body, headers=headers)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) >= 1

    def test_limit_is_per_ip(self, client: TestClient, user: User) -> None:
        body = {"username": "alice", "password": "wrong"}
        for _ in range(5):
            client.post("/api/v1/auth/login", json=body, headers={"X-Forwarded-For": "198.51.100.21"})
        resp = client.post("/api/v1/auth/login", json=body, headers={"X-Forwarded-For": "198.51.100.22"})
        assert resp.status_code == 401

    def test_register_shares_the_tier(self, client: TestClient) -> None:
        headers = {"X-Forwarded-For": "198.51.100.23"}
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"username": "x", "password": "y"}, headers=headers)
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "bob", "password": "pw", "masterKey": get_settings().master_key},
            headers=headers,
        )
        assert resp.status_code == 429
