"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for KeyRelay happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. master_key -> MASTER_KEY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a signing key with a warning; production
      mode refuses to start without one.

Security notes:
  SECRET_KEY signs session JWTs. Keys shorter than 32 chars are rejected.

  MASTER_KEY gates user self-registration. An empty MASTER_KEY disables
  registration entirely -- it is never treated as "matches anything".

  OPENAI_API_KEY / ANTHROPIC_API_KEY are the relayed provider secrets. They
  live only in this object and are never logged or persisted.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyrelay.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    master_key: str = ""

    # ------------------------------------------------------------------
    # Relayed provider keys (empty string = not configured -> 404)
    # ------------------------------------------------------------------

    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    database_url: str = ""  # empty = SQLite file next to auth/backend.py
    credential_cache_ttl: float = 60.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    token_expire_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Rate limiting (limits-library notation)
    # ------------------------------------------------------------------

    global_rate_limit: str = "100/15 minutes"
    auth_rate_limit: str = "5/15 minutes"
    key_retrieval_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    # Comma-separated list; empty means "*".
    allowed_origins: str = ""
    # Only enable behind a reverse proxy that overwrites X-Forwarded-For.
    trust_forwarded_for: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.credential_cache_ttl < 0:
            raise ValueError("CREDENTIAL_CACHE_TTL must not be negative.")
        return self

    @property
    def cors_origins(self) -> list[str]:
        """ALLOWED_ORIGINS split on commas; ["*"] when unset."""
        origins = [o.strip() for o in self.allowed_origins.split(",") if o.strip()]
        return origins or ["*"]

    def provider_key(self, service: str) -> str:
        """Return the configured plaintext key for a service ("" if unset)."""
        return {"openai": self.openai_api_key, "anthropic": self.anthropic_api_key}.get(service, "")


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
