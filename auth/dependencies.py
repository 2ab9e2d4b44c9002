"""
auth/dependencies.py -- FastAPI Depends() helpers: the authentication gate.

Each request moves Unauthenticated -> Resolving -> Authenticated | Rejected.
Rejection is always Unauthorized (401); the principal is attached to
request.state.principal on success.

Credential slots:
  Authorization: Bearer <jwt>  -- User session issued by POST /auth/login.
  X-API-Key: ks_...            -- User static key.
  X-App-Key: app_...           -- App key (X-API-Key is accepted as a
                                  fallback so simple clients can use one header).

get_current_user()  -- bearer first, then X-API-Key. User routes.
get_session_user()  -- bearer only. Session introspection.
get_current_app()   -- X-App-Key / X-API-Key. App routes. Checks expiry and
                       records the access (count + timestamp, persisted)
                       before any authorization or rate limiting runs.

Layer rule: may import fastapi (part of the DI system) and core/. No imports
from api/.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.models import App, User
from auth.store import CredentialStore
from auth.tokens import decode_access_token, key_prefix
from core.config import get_settings
from core.errors import NotFound, Unauthorized

logger = logging.getLogger("keyrelay.auth")


def client_ip(request: Request) -> str:
    """Resolve the caller's address.

    The first X-Forwarded-For hop is used only when TRUST_FORWARDED_FOR is
    set; otherwise the socket peer. Also the key function for IP-keyed rate
    limits, so both see the same address.
    """
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def request_origin(request: Request) -> str | None:
    return request.headers.get("Origin") or request.headers.get("Referer") or None


def _store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _user_from_token(store: CredentialStore, token: str) -> User:
    payload = decode_access_token(token)
    if payload is None:
        raise Unauthorized("Invalid or expired token.", code="invalid_token")
    user = store.get_user(payload["user_id"])
    if user is None:
        raise Unauthorized("Invalid or expired token.", code="invalid_token")
    return user


def get_session_user(request: Request) -> User:
    """Require a valid bearer session token."""
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Missing or invalid authorization header.", code="missing_credentials")
    user = _user_from_token(_store(request), token)
    request.state.principal = user
    return user


def get_current_user(request: Request) -> User:
    """Require a User via bearer token or X-API-Key.

    A present-but-invalid bearer token is rejected outright rather than
    falling through to the API key.
    """
    store = _store(request)
    token = _bearer_token(request)
    if token is not None:
        user = _user_from_token(store, token)
    else:
        raw_key = request.headers.get("X-API-Key", "")
        if not raw_key:
            raise Unauthorized("API key required.", code="missing_credentials")
        principal = store.lookup(raw_key)
        if not isinstance(principal, User):
            logger.info("Rejected user key %s... from %s", key_prefix(raw_key), client_ip(request))
            raise Unauthorized("Invalid API key.", code="invalid_api_key")
        user = principal
    request.state.principal = user
    return user


def get_current_app(request: Request) -> App:
    """Require an App via X-App-Key (or X-API-Key); record the access."""
    raw_key = request.headers.get("X-App-Key") or request.headers.get("X-API-Key") or ""
    if not raw_key:
        raise Unauthorized("App API key required.", code="missing_credentials")

    store = _store(request)
    principal = store.lookup(raw_key)
    if not isinstance(principal, App):
        logger.info("Rejected app key %s... from %s", key_prefix(raw_key), client_ip(request))
        raise Unauthorized("Invalid app API key.", code="invalid_api_key")
    if principal.is_expired():
        raise Unauthorized("App API key expired.", code="expired_api_key")

    try:
        app = store.record_access(principal)
    except NotFound as exc:
        # Revoked after the snapshot was taken.
        raise Unauthorized("Invalid app API key.", code="invalid_api_key") from exc
    request.state.principal = app
    return app

