"""
API request and response models for KeyRelay REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (userId, apiKey, encryptedKey) for compatibility
with existing JavaScript clients; Python attribute names stay snake_case via
the alias generator. FastAPI serializes response_model output by alias.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import App

DECRYPT_HINT = "Decrypt using PBKDF2-derived AES-256-GCM with your API key"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenWireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(_WireModel):
    """Request body for POST /api/v1/auth/register."""

    username: str = Field(min_length=1, max_length=255)
    # bcrypt truncates at 72 bytes; the cap keeps inputs below it.
    password: str = Field(min_length=1, max_length=72)
    master_key: str = Field(min_length=1, max_length=255)


class CredentialsRequest(_WireModel):
    """Request body for POST /auth/login and POST /auth/rotate-api-key."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class RegisterResponse(_FrozenWireModel):
    user_id: str
    username: str
    api_key: str
    message: str = "User registered successfully"


class LoginResponse(_FrozenWireModel):
    token: str
    api_key: str
    expires_in: int  # seconds


class RotateResponse(_FrozenWireModel):
    api_key: str
    message: str = "API key rotated successfully"


class MeResponse(_FrozenWireModel):
    user_id: str
    username: str
    last_access: Optional[str] = None


# ---------------------------------------------------------------------------
# Keys (user flow)
# ---------------------------------------------------------------------------


class KeyResponse(_FrozenWireModel):
    """Response for GET /api/v1/keys/{service}. encrypted_key is an Envelope JSON string."""

    service: str
    encrypted_key: str
    hint: str = DECRYPT_HINT
    timestamp: str


class AllKeysResponse(_FrozenWireModel):
    keys: dict[str, str]
    hint: str = DECRYPT_HINT
    timestamp: str


class DecryptTestRequest(_WireModel):
    """Request body for POST /api/v1/keys/decrypt-test."""

    encrypted_data: str = Field(min_length=1, max_length=8192)
    secret: str = Field(min_length=1, max_length=255)


class DecryptTestResponse(_FrozenWireModel):
    success: bool
    message: str
    key_prefix: str


# ---------------------------------------------------------------------------
# Keys (app flow)
# ---------------------------------------------------------------------------


class PermissionsModel(_FrozenWireModel):
    openai: bool
    anthropic: bool


class RateLimitModel(_FrozenWireModel):
    window_ms: int
    max_requests: int


class AppKeyResponse(_FrozenWireModel):
    """Response for GET /api/v1/app/keys/{service}."""

    service: str
    encrypted_key: str
    app: str
    environment: str
    timestamp: str


class AppAllKeysResponse(_FrozenWireModel):
    keys: dict[str, str]
    app: str
    environment: str
    permissions: PermissionsModel
    timestamp: str


class AppStatus(_FrozenWireModel):
    name: str
    environment: str
    permissions: PermissionsModel
    access_count: int
    last_access: Optional[str]
    rate_limit: RateLimitModel
    expires_at: Optional[str]

    @classmethod
    def from_app(cls, app: App) -> "AppStatus":
        """Build the public view of an App -- never includes the key itself."""
        return cls(
            name=app.name,
            environment=app.environment,
            permissions=PermissionsModel(openai=app.permissions.openai, anthropic=app.permissions.anthropic),
            access_count=app.access_count,
            last_access=app.last_access,
            rate_limit=RateLimitModel(window_ms=app.rate_limit.window_ms, max_requests=app.rate_limit.max_requests),
            expires_at=app.expires_at,
        )


class AppStatusResponse(_FrozenWireModel):
    app: AppStatus


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    timestamp: str
