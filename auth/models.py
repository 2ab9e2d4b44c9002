"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; auth/store.py does the work and auth/backend.py the persistence.

Two principal kinds share one API-key namespace:
  User -- a person with a password. Registers with the master key, logs in
          for a session token, and rotates their own API key.
  App  -- a service account created administratively. Carries per-service
          permissions, optional network/origin restrictions, its own rate
          limit, and an optional expiry.

Timestamps are ISO 8601 UTC strings, the same representation the store
persists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

SERVICES = ("openai", "anthropic")
ENVIRONMENTS = ("development", "staging", "production")

USER_KIND = "user"
APP_KIND = "app"


@dataclass
class Permissions:
    """Which relayed services an App may fetch."""

    openai: bool = False
    anthropic: bool = False

    def allows(self, service: str) -> bool:
        return service in SERVICES and bool(getattr(self, service))


@dataclass
class RateLimitPolicy:
    """Fixed-window budget for one App: max_requests per window_ms."""

    window_ms: int = 60_000
    max_requests: int = 30


@dataclass
class User:
    """A registered human caller.

    password_hash is a bcrypt hash (cost 12); the raw password is never kept.
    api_key is the static credential for X-API-Key and doubles as the secret
    every key release is encrypted under.
    """

    id: str
    username: str
    password_hash: str
    api_key: str
    created_at: str
    last_access: str | None = None

    kind = USER_KIND


@dataclass
class App:
    """A registered service account.

    allowed_ips / allowed_domains: empty list means unrestricted.
    access_count / last_access: bumped on every authenticated request.
    expires_at: None means the key never expires.
    """

    id: str
    name: str
    api_key: str
    permissions: Permissions
    created_at: str
    allowed_ips: list[str] = field(default_factory=list)
    allowed_domains: list[str] = field(default_factory=list)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    environment: str = "production"  # "development", "staging", "production"
    last_access: str | None = None
    access_count: int = 0
    expires_at: str | None = None

    kind = APP_KIND

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        try:
            expires = datetime.fromisoformat(self.expires_at)
        except ValueError:
            # Unreadable expiry (written outside register_app): deny.
            return True
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires <= now


Principal = Union[User, App]
