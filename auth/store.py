"""
auth/store.py -- Credential registry for Users and Apps.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_user_to_record / _record_to_user / _app_to_record / _record_to_app are the
mappers. Persistence goes through an injected CredentialBackend
(auth/backend.py), so route and dependency code never touches storage.

Consistency model:
  Reads are served from an in-process snapshot of every record, refreshed
  from the backend once it is older than cache_ttl seconds (default 60).
  The TTL only matters for changes made by another process -- e.g. the
  management CLI registering or revoking an app while the server runs.

  Writes go to the backend first and return only after the backend has
  committed. The snapshot is dropped immediately afterwards, so the next
  read in this process sees the write. A rotated-out key therefore stops
  authenticating at once, even though it was cached a moment before.

Concurrency:
  record_access() and rotate_api_key() hold a per-key lock while they do
  read-modify-write against the backend (never against the snapshot), so
  concurrent requests for the same principal cannot lose an update.
  register_user() holds a store-wide lock so two registrations for the same
  username cannot both pass the uniqueness check.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import asdict
from datetime import datetime, timezone

from auth.backend import CredentialBackend
from auth.models import (
    APP_KIND,
    ENVIRONMENTS,
    USER_KIND,
    App,
    Permissions,
    Principal,
    RateLimitPolicy,
    User,
)
from auth.tokens import APP_KEY_PREFIX, USER_KEY_PREFIX, check_master_key, generate_api_key, hash_password, key_prefix
from core.errors import Conflict, Forbidden, NotFound, ValidationError
from core.locks import KeyedLocks

logger = logging.getLogger("keyrelay.store")

_DEFAULT_CACHE_TTL = 60.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_expiry(value: str | None) -> str | None:
    """ISO 8601 timestamp in UTC, or None. Naive input is read as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError("expires_at must be an ISO 8601 timestamp.") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


class CredentialStore:
    """Repository for User and App principals.

    Usage:
        store = CredentialStore(SqlCredentialBackend())
        app = store.register_app("Bot", Permissions(openai=True))
        principal = store.lookup(app.api_key)
        store.close()
    """

    def __init__(self, backend: CredentialBackend, cache_ttl: float = _DEFAULT_CACHE_TTL) -> None:
        self.backend = backend
        self.cache_ttl = cache_ttl
        self._snapshot: dict[str, Principal] | None = None
        self._loaded_at = 0.0
        self._snapshot_lock = threading.Lock()
        self._register_lock = threading.Lock()
        self._key_locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Snapshot cache
    # ------------------------------------------------------------------

    def _principals(self) -> dict[str, Principal]:
        """Return the current snapshot, reloading it from the backend when stale."""
        with self._snapshot_lock:
            now = time.monotonic()
            if self._snapshot is None or now - self._loaded_at >= self.cache_ttl:
                self._snapshot = {key: _from_record(kind, rec) for key, (kind, rec) in self.backend.load_all().items()}
                self._loaded_at = now
            return self._snapshot

    def invalidate(self) -> None:
        """Drop the snapshot. The next read reloads from the backend."""
        with self._snapshot_lock:
            self._snapshot = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def lookup(self, api_key: str) -> Principal | None:
        """Resolve an API key to its User or App. Returns None if unknown."""
        if not api_key:
            return None
        return self._principals().get(api_key)

    def get_user(self, user_id: str) -> User | None:
        for principal in self._principals().values():
            if isinstance(principal, User) and principal.id == user_id:
                return principal
        return None

    def get_user_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive match. Returns None if not found."""
        for principal in self._principals().values():
            if isinstance(principal, User) and principal.username == username:
                return principal
        return None

    def list_users(self) -> list[User]:
        users = [p for p in self._principals().values() if isinstance(p, User)]
        return sorted(users, key=lambda u: u.username)

    def list_apps(self) -> list[App]:
        """All registered apps, oldest first."""
        apps = [p for p in self._principals().values() if isinstance(p, App)]
        return sorted(apps, key=lambda a: a.created_at)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(self, username: str, password: str, master_secret: str) -> User:
        """Create a user account.

        Raises Forbidden if master_secret does not match MASTER_KEY and
        Conflict if the username is taken. The password is stored only as a
        bcrypt hash.
        """
        if not check_master_key(master_secret):
            logger.warning("User registration refused: bad master key (username=%r)", username)
            raise Forbidden("Invalid master key.", code="invalid_master_key")

        password_hash = hash_password(password)
        with self._register_lock:
            # Uniqueness is checked against the backend, not the snapshot,
            # so another process's registration is seen too.
            for kind, record in self.backend.load_all().values():
                if kind == USER_KIND and record.get("username") == username:
                    raise Conflict("Username already exists.", code="username_taken")
            now = _now_iso()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                api_key=self._unused_key(USER_KEY_PREFIX),
                created_at=now,
                last_access=now,
            )
            self.backend.put(user.api_key, USER_KIND, _user_to_record(user))
            self.invalidate()
        logger.info("Registered user %r (key %s...)", username, key_prefix(user.api_key))
        return user

    def touch_user(self, user: User) -> User:
        """Stamp last_access on a user after a successful login."""
        with self._key_locks.hold(user.api_key):
            entry = self.backend.get(user.api_key)
            if entry is None:
                raise NotFound("User not found.")
            fresh = _record_to_user(entry[1])
            fresh.last_access = _now_iso()
            self.backend.put(fresh.api_key, USER_KIND, _user_to_record(fresh))
        self.invalidate()
        return fresh

    # ------------------------------------------------------------------
    # Apps
    # ------------------------------------------------------------------

    def register_app(
        self,
        name: str,
        permissions: Permissions,
        *,
        allowed_ips: list[str] | None = None,
        allowed_domains: list[str] | None = None,
        rate_limit: RateLimitPolicy | None = None,
        environment: str = "production",
        expires_at: str | None = None,
    ) -> App:
        """Create an App. Administrative path: names are not unique, only keys are."""
        if environment not in ENVIRONMENTS:
            raise ValidationError(f"environment must be one of {', '.join(ENVIRONMENTS)}.")
        policy = rate_limit or RateLimitPolicy()
        if policy.window_ms <= 0 or policy.max_requests <= 0:
            raise ValidationError("rate limit window and max requests must be positive.")
        expires_at = _normalize_expiry(expires_at)
        app = App(
            id=str(uuid.uuid4()),
            name=name,
            api_key=self._unused_key(APP_KEY_PREFIX),
            permissions=permissions,
            created_at=_now_iso(),
            allowed_ips=list(allowed_ips or []),
            allowed_domains=list(allowed_domains or []),
            rate_limit=policy,
            environment=environment,
            expires_at=expires_at,
        )
        self.backend.put(app.api_key, APP_KIND, _app_to_record(app))
        self.invalidate()
        logger.info("Registered app %r id=%s (key %s...)", name, app.id, key_prefix(app.api_key))
        return app

    def record_access(self, app: App) -> App:
        """Increment access_count and stamp last_access; persisted before returning.

        Returns the updated App. Raises NotFound if the app was revoked
        between lookup and this call.
        """
        with self._key_locks.hold(app.api_key):
            entry = self.backend.get(app.api_key)
            if entry is None:
                raise NotFound("App not found.")
            fresh = _record_to_app(entry[1])
            fresh.access_count += 1
            fresh.last_access = _now_iso()
            self.backend.put(fresh.api_key, APP_KIND, _app_to_record(fresh))
        self.invalidate()
        return fresh

    def revoke_app(self, name: str) -> int:
        """Delete every app called `name`. Returns how many were removed.

        Names are not unique, so this can remove more than one app. Use
        revoke_app_by_id() when that matters.
        """
        removed = 0
        for key, (kind, record) in self.backend.load_all().items():
            if kind == APP_KIND and record.get("name") == name:
                with self._key_locks.hold(key):
                    if self.backend.delete(key):
                        removed += 1
        self.invalidate()
        if removed:
            logger.info("Revoked %d app(s) named %r", removed, name)
        return removed

    def revoke_app_by_id(self, app_id: str) -> bool:
        for key, (kind, record) in self.backend.load_all().items():
            if kind == APP_KIND and record.get("id") == app_id:
                with self._key_locks.hold(key):
                    deleted = self.backend.delete(key)
                self.invalidate()
                if deleted:
                    logger.info("Revoked app id=%s", app_id)
                return deleted
        return False

    # ------------------------------------------------------------------
    # Both kinds
    # ------------------------------------------------------------------

    def rotate_api_key(self, principal: Principal) -> str:
        """Replace a principal's API key. The old key stops working immediately.

        The backend re-keys the record in one transaction, then the snapshot
        is dropped. Returns the new key.
        """
        old_key = principal.api_key
        with self._key_locks.hold(old_key):
            entry = self.backend.get(old_key)
            if entry is None:
                raise NotFound("Principal not found.")
            kind, record = entry
            prefix = USER_KEY_PREFIX if kind == USER_KIND else APP_KEY_PREFIX
            new_key = self._unused_key(prefix)
            record["api_key"] = new_key
            try:
                self.backend.move(old_key, new_key, kind, record)
            except KeyError as exc:
                raise NotFound("Principal not found.") from exc
        self.invalidate()
        principal.api_key = new_key
        logger.info("Rotated %s key %s... -> %s...", kind, key_prefix(old_key), key_prefix(new_key))
        return new_key

    def close(self) -> None:
        self.backend.close()

    def _unused_key(self, prefix: str) -> str:
        # 256-bit keys do not collide in practice; the check keeps the
        # cross-kind uniqueness invariant explicit.
        while True:
            candidate = generate_api_key(prefix)
            if self.backend.get(candidate) is None:
                return candidate


# ---------------------------------------------------------------------------
# Record mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_to_record(user: User) -> dict:
    return asdict(user)


def _record_to_user(record: dict) -> User:
    return User(
        id=record["id"],
        username=record["username"],
        password_hash=record["password_hash"],
        api_key=record["api_key"],
        created_at=record["created_at"],
        last_access=record.get("last_access"),
    )


def _app_to_record(app: App) -> dict:
    return asdict(app)


def _record_to_app(record: dict) -> App:
    perms = record.get("permissions") or {}
    limit = record.get("rate_limit") or {}
    return App(
        id=record["id"],
        name=record["name"],
        api_key=record["api_key"],
        permissions=Permissions(openai=bool(perms.get("openai")), anthropic=bool(perms.get("anthropic"))),
        created_at=record["created_at"],
        allowed_ips=list(record.get("allowed_ips") or []),
        allowed_domains=list(record.get("allowed_domains") or []),
        rate_limit=RateLimitPolicy(
            window_ms=int(limit.get("window_ms", 60_000)),
            max_requests=int(limit.get("max_requests", 30)),
        ),
        environment=record.get("environment", "production"),
        last_access=record.get("last_access"),
        access_count=int(record.get("access_count", 0)),
        expires_at=record.get("expires_at"),
    )


def _from_record(kind: str, record: dict) -> Principal:
    return _record_to_user(record) if kind == USER_KIND else _record_to_app(record)
