"""
auth/restrictions.py -- Authorization checks for App principals.

Three independent checks, always applied in this order, each raising a
Forbidden with its own code so a caller can tell misconfiguration apart:

  1. service permission   -> "service_not_permitted"
  2. IP allow-list        -> "ip_not_allowed"
  3. origin allow-list    -> "origin_not_allowed"

An empty allow-list means unrestricted. When an app has an origin
allow-list and the request carries neither Origin nor Referer, the request
is denied -- one policy for every deployment mode.

Origin matching is substring containment ("example.com" admits
"https://app.example.com"). Operators should list full scheme+host values
when that is too loose.

User principals are not subject to these checks.

Layer rule: no imports from api/. Plain functions, no FastAPI types, so the
rules are testable without a request.
"""

from __future__ import annotations

from auth.models import SERVICES, App
from core.errors import Forbidden, NotFound


def check_service(app: App, service: str) -> None:
    if service not in SERVICES:
        raise NotFound(f"Unknown service '{service}'.", code="unknown_service")
    if not app.permissions.allows(service):
        raise Forbidden(f"App does not have permission to access {service} keys.", code="service_not_permitted")


def check_ip(app: App, client_ip: str | None) -> None:
    if not app.allowed_ips:
        return
    if not client_ip or client_ip not in app.allowed_ips:
        raise Forbidden("Access denied from this IP.", code="ip_not_allowed")


def check_origin(app: App, origin: str | None) -> None:
    if not app.allowed_domains:
        return
    if not origin or not any(domain in origin for domain in app.allowed_domains):
        raise Forbidden("Access denied from this domain.", code="origin_not_allowed")


def authorize_app(app: App, *, client_ip: str | None, origin: str | None, service: str | None = None) -> None:
    """Run every applicable check; the first failure raises.

    service=None skips the permission check (routes that are not tied to one
    service, e.g. /app/status and /app/keys/all, still enforce network rules).
    """
    if service is not None:
        check_service(app, service)
    check_ip(app, client_ip)
    check_origin(app, origin)
