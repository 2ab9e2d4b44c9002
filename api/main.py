"""
api/main.py -- FastAPI application entry point for KeyRelay.

Run with:  uvicorn api.main:app
           keyrelay serve   (see main.py)

Middleware stack (outermost to innermost, i.e. reverse registration order):
  1. log_requests        -- one access-log line per request
  2. security_headers    -- nosniff / frame deny / XSS / HSTS on every response
  3. CORSMiddleware      -- origins from ALLOWED_ORIGINS
  4. SlowAPIMiddleware   -- the global per-IP limit from api.limiter

Lifespan opens the credential store on startup and closes it on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.apps import router as apps_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.keys import router as keys_router
from auth.backend import SqlCredentialBackend
from auth.dependencies import client_ip
from auth.store import CredentialStore
from core.config import get_settings
from core.errors import RelayError, TooManyRequests

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyrelay.api")

settings = get_settings()


def _error_body(code: str, message: str, detail: str | None = None) -> dict:
    return ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_store() -> CredentialStore:
    """Open the configured credential store (DATABASE_URL, or the default SQLite file)."""
    backend = SqlCredentialBackend(settings.database_url) if settings.database_url else SqlCredentialBackend()
    return CredentialStore(backend, cache_ttl=settings.credential_cache_ttl)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the credential store before the first request; close it after the last."""
    logger.info("KeyRelay API starting up (version %s)", VERSION)
    app.state.credential_store = build_store()
    users, apps = app.state.credential_store.list_users(), app.state.credential_store.list_apps()
    logger.info("Credential store initialized (%d users, %d apps)", len(users), len(apps))
    if not settings.master_key:
        logger.warning("MASTER_KEY is not set -- user registration is disabled")
    configured = [s for s in ("openai", "anthropic") if settings.provider_key(s)]
    if not configured:
        logger.warning("No provider keys configured -- every key request will return 404")

    yield

    app.state.credential_store.close()
    logger.info("KeyRelay API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="KeyRelay API",
    description="Relays provider API keys to authenticated clients inside per-caller encrypted envelopes.",
    version=VERSION,
    lifespan=lifespan,
    # Schema browsing only in development.
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware("http") both wrap the existing stack,
# so the last registration is the outermost layer.
# ---------------------------------------------------------------------------

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-App-Key"],
    max_age=3600,
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client_ip(request),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(keys_router, prefix="/api/v1", tags=["Keys"])
app.include_router(apps_router, prefix="/api/v1", tags=["App Keys"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Map a domain exception to its status code and error envelope."""
    response = JSONResponse(status_code=exc.status_code, content={"error": exc.to_detail()})
    if isinstance(exc, TooManyRequests):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the global limit trips.

    Must stay a plain function: SlowAPIMiddleware calls it directly, without
    awaiting.
    """
    logger.warning("Global rate limit exceeded for %s", client_ip(request))
    response = JSONResponse(
        status_code=429,
        content=_error_body("rate_limited", "Too many requests from this IP, please try again later."),
    )
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60) or 60))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a structured error when a body, path or query param fails validation."""
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()} - {""})
    message = f"Missing or invalid fields: {', '.join(fields)}" if fields else "Request validation failed."
    return JSONResponse(status_code=400, content=_error_body("validation_error", message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for framework HTTP exceptions (unknown route, bad method).

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(f"http_{exc.status_code}", str(exc.detail)),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log with request context; the client gets a
    generic message, plus the exception text only in debug mode.
    """
    logger.exception(
        "Unhandled exception on %s %s from %s at %s",
        request.method,
        request.url.path,
        client_ip(request),
        datetime.now(timezone.utc).isoformat(),
    )
    detail = str(exc) if settings.debug else None
    return JSONResponse(
        status_code=500,
        content=_error_body("internal_error", "An unexpected error occurred.", detail),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION, timestamp=datetime.now(timezone.utc).isoformat())
