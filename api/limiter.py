"""
api/limiter.py -- Rate limiting tiers.

Four fixed-window tiers, all in-process memory:

  Global        GLOBAL_RATE_LIMIT (100/15 minutes) per client IP, every route.
                The shared slowapi Limiter below, mounted by api/main.py as
                SlowAPIMiddleware via application_limits.
  Auth          AUTH_RATE_LIMIT (5/15 minutes) per client IP on register,
                login and rotate.
  Key retrieval KEY_RETRIEVAL_RATE_LIMIT (10/minute) per client IP on the
                user key routes. Applied after authentication; every request
                that gets that far counts, including ones that then 404.
  Per-app       the App's own {window_ms, max_requests}, keyed by App id.

The last three are FixedWindowLimiter instances: the `limits` library's
FixedWindowRateLimiter (the same engine slowapi runs on) exposed as FastAPI
dependencies so they can sit after the authentication gate. A rejected
request is not counted -- test-then-hit under a per-key lock -- so a client
hammering a closed window does not push its counter further.

Using module-level singletons ensures every route shares one counter store.
"""

from __future__ import annotations

import logging
import math
import time

from fastapi import Depends, Request
from limits import RateLimitItem, RateLimitItemPerSecond, parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter

from auth.dependencies import client_ip, get_current_app, get_current_user
from auth.models import App, RateLimitPolicy, User
from core.config import get_settings
from core.errors import TooManyRequests
from core.locks import KeyedLocks

logger = logging.getLogger("keyrelay.api")

_settings = get_settings()


class FixedWindowLimiter:
    """Named fixed-window limiter.

    Usage:
        limiter = FixedWindowLimiter("auth", "5/15 minutes")
        limiter.check(ip)                      # raises TooManyRequests
        limiter.hit(app_id, item=policy_item)  # returns bool
    """

    def __init__(self, name: str, limit: str | RateLimitItem | None = None, message: str | None = None) -> None:
        self.name = name
        self.default_item = parse(limit) if isinstance(limit, str) else limit
        self.message = message or "Too many requests, please try again later."
        self._storage = MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)
        self._locks = KeyedLocks()

    def _item(self, item: RateLimitItem | None) -> RateLimitItem:
        resolved = item or self.default_item
        if resolved is None:
            raise ValueError(f"limiter {self.name!r} has no default limit")
        return resolved

    def hit(self, key: str, item: RateLimitItem | None = None) -> bool:
        """Count one request for key. False (and no increment) if the window is full."""
        item = self._item(item)
        with self._locks.hold(key):
            if not self._strategy.test(item, self.name, key):
                return False
            return self._strategy.hit(item, self.name, key)

    def retry_after(self, key: str, item: RateLimitItem | None = None) -> int:
        """Seconds until key's current window resets."""
        reset_time, _remaining = self._strategy.get_window_stats(self._item(item), self.name, key)
        return max(1, math.ceil(reset_time - time.time()))

    def check(self, key: str, item: RateLimitItem | None = None) -> None:
        if not self.hit(key, item):
            retry = self.retry_after(key, item)
            logger.warning("Rate limit %r exceeded for %s (retry in %ds)", self.name, key, retry)
            raise TooManyRequests(self.message, retry_after=retry)

    def reset(self) -> None:
        self._storage.reset()


def policy_item(policy: RateLimitPolicy) -> RateLimitItem:
    """RateLimitItem for an App policy. Windows are whole seconds, rounded up."""
    seconds = max(1, math.ceil(policy.window_ms / 1000))
    return RateLimitItemPerSecond(policy.max_requests, seconds)


# ---------------------------------------------------------------------------
# Shared instances
# ---------------------------------------------------------------------------

limiter = Limiter(
    key_func=client_ip,
    application_limits=[_settings.global_rate_limit],
    storage_uri="memory://",
    strategy="fixed-window",
)

auth_limiter = FixedWindowLimiter(
    "auth",
    _settings.auth_rate_limit,
    "Too many authentication attempts, please try again later.",
)
key_retrieval_limiter = FixedWindowLimiter(
    "key-retrieval",
    _settings.key_retrieval_rate_limit,
    "Too many key retrieval requests, please try again later.",
)
app_limiter = FixedWindowLimiter("app", message="App rate limit exceeded.")


def reset_rate_limits() -> None:
    """Clear every counter in every tier."""
    limiter.reset()
    for tier in (auth_limiter, key_retrieval_limiter, app_limiter):
        tier.reset()


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def limit_auth(request: Request) -> None:
    auth_limiter.check(client_ip(request))


def limit_key_retrieval(request: Request, user: User = Depends(get_current_user)) -> User:
    key_retrieval_limiter.check(client_ip(request))
    return user


def limit_app(app: App = Depends(get_current_app)) -> App:
    app_limiter.check(app.id, policy_item(app.rate_limit))
    return app
