"""
api/routes/v1/auth.py -- User registration, login and API key rotation.

Routes:
  POST /api/v1/auth/register        -- create a user (master key in body); 201
  POST /api/v1/auth/login           -- password login; returns JWT + API key
  POST /api/v1/auth/rotate-api-key  -- password re-auth; issues a new API key
  GET  /api/v1/auth/me              -- session info (bearer token)

Security:
  register / login / rotate share the auth rate-limit tier (5 per 15 minutes
  per IP), applied before any bcrypt work.
  authenticate_user() provides timing equalization -- use it, never inline.
  Wrong username and wrong password produce the same "bad_credentials" error.
  Cache-Control: no-store on every response that carries a credential.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limit_auth
from api.models import (
    CredentialsRequest,
    LoginResponse,
    MeResponse,
    RegisterRequest,
    RegisterResponse,
    RotateResponse,
)
from auth.dependencies import client_ip, get_session_user
from auth.models import User
from auth.store import CredentialStore
from auth.tokens import authenticate_user, create_access_token
from core.config import get_settings
from core.errors import NotFound, Unauthorized

logger = logging.getLogger("keyrelay.api")

# Auth policy:
# - POST /api/v1/auth/register:        public + master key, auth rate limit
# - POST /api/v1/auth/login:           public, auth rate limit
# - POST /api/v1/auth/rotate-api-key:  username+password, auth rate limit
# - GET  /api/v1/auth/me:              bearer session (get_session_user)
router = APIRouter()


def _authenticate_or_401(request: Request, body: CredentialsRequest) -> User:
    store: CredentialStore = request.app.state.credential_store
    user = authenticate_user(store, body.username, body.password)
    if user is None:
        logger.info("Failed password auth for %r from %s", body.username, client_ip(request))
        raise Unauthorized("Invalid credentials.", code="bad_credentials")
    return user


def _touch_after_login(store: CredentialStore, user: User) -> User:
    """Stamp last_access. A rotation racing the login moves the key, so reload by id once."""
    try:
        return store.touch_user(user)
    except NotFound:
        current = store.get_user(user.id)
    try:
        if current is None:
            raise NotFound("User not found.")
        return store.touch_user(current)
    except NotFound as exc:
        logger.info("Login for %r lost its record mid-request", user.username)
        raise Unauthorized("Invalid credentials.", code="bad_credentials") from exc


@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(limit_auth)],
)
def register(request: Request, response: Response, body: RegisterRequest) -> RegisterResponse:
    """Create a user account. Requires the deployment's MASTER_KEY.

    403 for a bad master key, 409 for a taken username. The raw API key is
    returned here and on every login; store it like a password.
    """
    store: CredentialStore = request.app.state.credential_store
    user = store.register_user(body.username, body.password, body.master_key)
    response.headers["Cache-Control"] = "no-store"
    return RegisterResponse(user_id=user.id, username=user.username, api_key=user.api_key)


@router.post("/auth/login", response_model=LoginResponse, dependencies=[Depends(limit_auth)])
def login(request: Request, response: Response, body: CredentialsRequest) -> LoginResponse:
    """Authenticate with username and password; issue a 24h session token."""
    store: CredentialStore = request.app.state.credential_store
    user = _touch_after_login(store, _authenticate_or_401(request, body))
    token = create_access_token(user.id, user.username)
    response.headers["Cache-Control"] = "no-store"
    return LoginResponse(token=token, api_key=user.api_key, expires_in=get_settings().token_expire_seconds)


@router.post("/auth/rotate-api-key", response_model=RotateResponse, dependencies=[Depends(limit_auth)])
def rotate_api_key(request: Request, response: Response, body: CredentialsRequest) -> RotateResponse:
    """Replace the caller's API key. The old key is dead as soon as this returns.

    Envelopes previously issued under the old key can no longer be decrypted
    with the new one; clients must re-fetch.
    """
    store: CredentialStore = request.app.state.credential_store
    user = _authenticate_or_401(request, body)
    new_key = store.rotate_api_key(user)
    response.headers["Cache-Control"] = "no-store"
    return RotateResponse(api_key=new_key)


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_session_user)) -> MeResponse:
    """Return identity information for the current session."""
    return MeResponse(user_id=current_user.id, username=current_user.username, last_access=current_user.last_access)
