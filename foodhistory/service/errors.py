from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP status and a stable error code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Username/password pair did not match a usable local credential."""


class MissingEmailError(AuthenticationError):
    """The identity provider returned no email claim."""
    error_code = "missing_email"


class AccountDisabledError(AuthenticationError):
    """The reconciled or looked-up account is disabled."""
    error_code = "account_disabled"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ReconciliationFailedError(ServerError):
    """Storage failed while mapping a federated identity to an account."""
    error_code = "reconciliation_failed"


class TokenIssuanceFailedError(ServerError):
    """A remember-me grant could not be persisted.

    Never surfaced to clients; the login proceeds without a cookie.
    """
    error_code = "token_issuance_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MissingEmailError",
    "AccountDisabledError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ReconciliationFailedError",
    "TokenIssuanceFailedError",
]
