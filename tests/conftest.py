"""
tests/conftest.py -- Shared test fixtures for KeyRelay.

This module provides:
  - store:       an isolated CredentialStore on a named shared-memory SQLite DB
  - client:      TestClient over the real app, with the lifespan swapped so
                 routes see the isolated store
  - user:        a registered User plus its plaintext password
  - make_app:    factory registering Apps straight through the store
  - rate-limit counters reset around every test (autouse)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Each store gets its own name so tests never share records.

Environment variables must be set before any api/auth/core import:
get_settings() is cached on first use, and auth.tokens reads it at import.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set these before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ["MASTER_KEY"] = "test-master-key-0123456789"
os.environ["OPENAI_API_KEY"] = "sk-test-openai-abcdefghijklmnop"
os.environ["ANTHROPIC_API_KEY"] = "sk-ant-REDACTED"
os.environ["TRUST_FORWARDED_FOR"] = "true"

import pytest
from fastapi.testclient import TestClient

from api.limiter import reset_rate_limits
from api.main import app
from auth.backend import SqlCredentialBackend
from auth.models import App, Permissions, User
from auth.store import CredentialStore

MASTER_KEY = os.environ["MASTER_KEY"]
OPENAI_KEY = os.environ["OPENAI_API_KEY"]
ANTHROPIC_KEY = os.environ["ANTHROPIC_API_KEY"]
USER_PASSWORD = "correct-horse-battery"


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credential_store = store
        yield

    return test_lifespan


@pytest.fixture(autouse=True)
def _reset_limits() -> Generator[None, None, None]:
    """Every test starts with empty rate-limit windows."""
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    url = f"sqlite:///file:test_keyrelay_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    credential_store = CredentialStore(SqlCredentialBackend(url))
    yield credential_store
    credential_store.close()


@pytest.fixture
def client(store: CredentialStore) -> Generator[TestClient, None, None]:
    """TestClient hitting real route handlers against the isolated store."""
    app.router.lifespan_context = _patch_lifespan(store)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client


@pytest.fixture
def user_password() -> str:
    return USER_PASSWORD


@pytest.fixture
def user(store: CredentialStore) -> User:
    """A registered user "alice" whose password is USER_PASSWORD."""
    return store.register_user("alice", USER_PASSWORD, MASTER_KEY)


@pytest.fixture
def make_app(store: CredentialStore) -> Callable[..., App]:
    """Register an App through the store; keyword args go to register_app()."""

    def _make(name: str = "Bot", openai: bool = True, anthropic: bool = False, **options) -> App:
        return store.register_app(name, Permissions(openai=openai, anthropic=anthropic), **options)

    return _make
