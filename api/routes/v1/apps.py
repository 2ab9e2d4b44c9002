"""
api/routes/v1/apps.py -- Provider key retrieval for App principals.

Routes:
  GET /api/v1/app/keys/all        -- every key the app is permitted and that is configured
  GET /api/v1/app/keys/{service}  -- one key; 403 without the service permission
  GET /api/v1/app/status          -- the app's own public record

Request pipeline, per route:
  get_current_app  -- authenticate, expiry check, record access
  limit_app        -- the app's own {window_ms, max_requests} window
  authorize_app    -- service permission, IP allow-list, origin allow-list

Envelopes are sealed under the app's API key.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limit_app
from api.models import AppAllKeysResponse, AppKeyResponse, AppStatus, AppStatusResponse, PermissionsModel
from auth.dependencies import client_ip, request_origin
from auth.models import SERVICES, App
from auth.restrictions import authorize_app
from core.config import get_settings
from core.envelope import encrypt_key
from core.errors import NotFound

logger = logging.getLogger("keyrelay.api")

router = APIRouter()

_SERVICE_LABELS = {"openai": "OpenAI", "anthropic": "Anthropic"}


def _authorize(request: Request, app: App, service: str | None = None) -> None:
    authorize_app(app, client_ip=client_ip(request), origin=request_origin(request), service=service)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/app/keys/all", response_model=AppAllKeysResponse)
def get_app_keys(request: Request, response: Response, app: App = Depends(limit_app)) -> AppAllKeysResponse:
    """Return envelopes for every service the app may use and that is configured.

    404 when the intersection is empty.
    """
    _authorize(request, app)
    settings = get_settings()
    keys = {
        service: encrypt_key(settings.provider_key(service), app.api_key)
        for service in SERVICES
        if app.permissions.allows(service) and settings.provider_key(service)
    }
    if not keys:
        raise NotFound("No accessible keys for this app", code="key_not_configured")
    logger.info("Issued %d key envelope(s) to app %s (%s)", len(keys), app.name, app.environment)
    response.headers["Cache-Control"] = "no-store"
    return AppAllKeysResponse(
        keys=keys,
        app=app.name,
        environment=app.environment,
        permissions=PermissionsModel(openai=app.permissions.openai, anthropic=app.permissions.anthropic),
        timestamp=_timestamp(),
    )


@router.get("/app/keys/{service}", response_model=AppKeyResponse)
def get_app_key(
    service: str,
    request: Request,
    response: Response,
    app: App = Depends(limit_app),
) -> AppKeyResponse:
    _authorize(request, app, service)
    plaintext = get_settings().provider_key(service)
    if not plaintext:
        raise NotFound(f"{_SERVICE_LABELS[service]} API key not configured", code="key_not_configured")
    logger.info("Issued %s key envelope to app %s (%s)", service, app.name, app.environment)
    response.headers["Cache-Control"] = "no-store"
    return AppKeyResponse(
        service=service,
        encrypted_key=encrypt_key(plaintext, app.api_key),
        app=app.name,
        environment=app.environment,
        timestamp=_timestamp(),
    )


@router.get("/app/status", response_model=AppStatusResponse)
def get_app_status(request: Request, app: App = Depends(limit_app)) -> AppStatusResponse:
    """Return the app's public record: permissions, limits, usage and expiry."""
    _authorize(request, app)
    return AppStatusResponse(app=AppStatus.from_app(app))
