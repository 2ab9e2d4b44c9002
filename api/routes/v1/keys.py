"""
api/routes/v1/keys.py -- Provider key retrieval for User principals.

Route registration order matters here. /keys/all must be registered before
/keys/{service} or FastAPI will match the literal "all" as a service name
and answer 404 unknown_service.

Every provider key leaves this module sealed in an Envelope under the
caller's own API key. A bearer session resolves to the same User, so the
client decrypts with the API key it received at login either way.

All three routes sit behind limit_key_retrieval (10/minute per IP), which
authenticates first and then counts the request, whatever happens next.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response

from api.limiter import limit_key_retrieval
from api.models import AllKeysResponse, DecryptTestRequest, DecryptTestResponse, KeyResponse
from auth.models import SERVICES, User
from core.config import get_settings
from core.envelope import decrypt_key, encrypt_key
from core.errors import NotFound

logger = logging.getLogger("keyrelay.api")

router = APIRouter()

_SERVICE_LABELS = {"openai": "OpenAI", "anthropic": "Anthropic"}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _configured_key(service: str) -> str:
    """Plaintext provider key for service, or NotFound when it is unset."""
    if service not in SERVICES:
        raise NotFound(f"Unknown service '{service}'.", code="unknown_service")
    plaintext = get_settings().provider_key(service)
    if not plaintext:
        raise NotFound(f"{_SERVICE_LABELS[service]} API key not configured", code="key_not_configured")
    return plaintext


# ---------------------------------------------------------------------------
# Route 1: GET /keys/all -- registered FIRST to avoid /{service} capture
# ---------------------------------------------------------------------------


@router.get("/keys/all", response_model=AllKeysResponse)
def get_all_keys(response: Response, user: User = Depends(limit_key_retrieval)) -> AllKeysResponse:
    """Return an envelope for every configured provider key."""
    settings = get_settings()
    keys = {
        service: encrypt_key(settings.provider_key(service), user.api_key)
        for service in SERVICES
        if settings.provider_key(service)
    }
    if not keys:
        raise NotFound("No API keys configured", code="key_not_configured")
    logger.info("Issued %d key envelope(s) to user %s", len(keys), user.username)
    response.headers["Cache-Control"] = "no-store"
    return AllKeysResponse(keys=keys, timestamp=_timestamp())


# ---------------------------------------------------------------------------
# Route 2: POST /keys/decrypt-test
# ---------------------------------------------------------------------------


@router.post("/keys/decrypt-test", response_model=DecryptTestResponse)
def decrypt_test(body: DecryptTestRequest, user: User = Depends(limit_key_retrieval)) -> DecryptTestResponse:
    """Check that a client can open an envelope with a given secret.

    Only the first 8 characters of the plaintext come back. Any failure
    (malformed JSON, wrong secret, tampered field) is a single 400
    decryption_failed.
    """
    plaintext = decrypt_key(body.encrypted_data, body.secret)
    return DecryptTestResponse(
        success=True,
        message="Decryption successful",
        key_prefix=plaintext[:8] + "...",
    )


# ---------------------------------------------------------------------------
# Route 3: GET /keys/{service}
# ---------------------------------------------------------------------------


@router.get("/keys/{service}", response_model=KeyResponse)
def get_key(service: str, response: Response, user: User = Depends(limit_key_retrieval)) -> KeyResponse:
    """Return one provider key sealed under the caller's API key."""
    plaintext = _configured_key(service)
    encrypted = encrypt_key(plaintext, user.api_key)
    logger.info("Issued %s key envelope to user %s", service, user.username)
    response.headers["Cache-Control"] = "no-store"
    return KeyResponse(service=service, encrypted_key=encrypted, timestamp=_timestamp())
