"""
auth/tokens.py -- JWT, password hashing, and API key utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (username), user_id, iat and exp. Default validity is 24 hours.
       Verification returns None on any failure -- the gate turns that into
       a 401.

  Passwords: bcrypt with cost factor 12. The _DUMMY_HASH constant enables
       timing equalization in authenticate_user() so response time does not
       reveal whether a username exists.

  API keys: secrets.token_hex(32) gives 256 bits of entropy. Users get a
       "ks_" prefix and Apps an "app_" prefix so an operator can tell them
       apart at a glance. Keys are stored raw because they are also the
       secret each key release is encrypted under -- the server must be able
       to re-encrypt for a bearer-token session that never presents the key.

  Master key: compared with hmac.compare_digest. An unset MASTER_KEY never
       matches.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import CredentialStore

logger = logging.getLogger("keyrelay.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 12

USER_KEY_PREFIX = "ks_"
APP_KEY_PREFIX = "app_"


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash (cost 12) of the given plaintext password.

    bcrypt truncates input at 72 bytes; the API layer caps password length
    well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first failed login is not measurably
# faster than later ones.
_DUMMY_HASH: str = hash_password("keyrelay_timing_dummy")


def check_master_key(candidate: str) -> bool:
    """Constant-time comparison against the configured MASTER_KEY."""
    expected = _settings.master_key
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, username: str, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT.

    Args:
        user_id:        User.id (UUID string).
        username:       Stored as the JWT subject claim.
        expire_seconds: Session duration. 0 (default) uses
                        Settings.token_expire_seconds (24h).
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "user_id": user_id,
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Covers bad signature, malformed token, expired exp, and missing claims.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: CredentialStore, username: str, password: str) -> User | None:
    """Authenticate a username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_user_by_username(username)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# API key generation
# ---------------------------------------------------------------------------


def generate_api_key(prefix: str = USER_KEY_PREFIX) -> str:
    """Generate a new API key: <prefix><64 hex chars> (256 bits of entropy)."""
    return f"{prefix}{secrets.token_hex(32)}"


def key_prefix(raw_key: str) -> str:
    """First 12 characters of a key -- the only part that may appear in logs."""
    return raw_key[:12]
