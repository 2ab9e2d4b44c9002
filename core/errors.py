"""
core/errors.py -- Domain exception taxonomy for KeyRelay.

Every failure the core can anticipate is one of these types. Stores, the
envelope cipher and the restriction checker raise them; api/main.py owns the
single exception handler that turns them into the standard error envelope:

    {"error": {"code": "...", "message": "..."}}

Each class carries its HTTP status so the mapping lives next to the type,
not in a lookup table in the API layer. `code` is the machine-readable
identifier clients branch on; it defaults per class and can be narrowed per
raise (e.g. Forbidden("ip_not_allowed", ...)).

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for anticipated, client-visible failures."""

    status_code: int = 500
    default_code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(RelayError):
    status_code = 400
    default_code = "validation_error"
    default_message = "Request validation failed."


class AuthenticationFailure(RelayError):
    """Envelope could not be decrypted: tag mismatch, wrong secret, or malformed field.

    Deliberately carries no detail about which check failed.
    """

    status_code = 400
    default_code = "decryption_failed"
    default_message = "Decryption failed. Check your secret."


class Unauthorized(RelayError):
    status_code = 401
    default_code = "unauthorized"
    default_message = "Authentication required."


class Forbidden(RelayError):
    status_code = 403
    default_code = "forbidden"
    default_message = "Access denied."


class NotFound(RelayError):
    status_code = 404
    default_code = "not_found"
    default_message = "Resource not found."


class Conflict(RelayError):
    status_code = 409
    default_code = "conflict"
    default_message = "Resource already exists."


class TooManyRequests(RelayError):
    status_code = 429
    default_code = "rate_limited"
    default_message = "Too many requests."

    def __init__(self, message: str | None = None, code: str | None = None, retry_after: int = 60) -> None:
        super().__init__(message, code)
        self.retry_after = max(1, int(retry_after))
