from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error / config_error (500)
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


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429).

    Carries retry metadata only; which policy was breached is not exposed.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after: int,
        limit: int,
        reset_at: int,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """A required secret, key, or client id is missing or malformed (500).

    The message is logged server-side; clients only ever see a generic error.
    """
    error_code = "config_error"


# Stable reason codes surfaced on the login redirect
AUTH_REASON_MISSING_CODE = "missing_code"
AUTH_REASON_INVALID_STATE = "invalid_state"
AUTH_REASON_AUTH_FAILED = "auth_failed"
AUTH_REASON_NO_ORGANIZATION = "no_organization"
AUTH_REASON_CONFIG_ERROR = "config_error"


class AuthFlowError(AuthenticationError):
    """Browser sign-in flow failed with a machine-readable reason."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason, error_code=reason)
        self.reason = reason


class RefreshFailedError(AuthenticationError):
    """The refresh token was refused; the caller must re-authenticate."""


class IdentityProviderError(Exception):
    """Non-2xx or malformed response from the identity provider.

    The upstream body is logged where it is received and never stored here.
    """

    def __init__(self, operation: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"identity provider {operation} failed")
        self.operation = operation
        self.status_code = status_code


class StaticAllowlistEntryError(ForbiddenError):
    """Attempt to remove an address that is configured in ALLOWED_EMAILS."""

    def __init__(self) -> None:
        super().__init__(
            "Cannot remove email from environment variable allowlist. "
            "Update the ALLOWED_EMAILS environment variable to modify it."
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "AuthFlowError",
    "RefreshFailedError",
    "IdentityProviderError",
    "StaticAllowlistEntryError",
    "AUTH_REASON_MISSING_CODE",
    "AUTH_REASON_INVALID_STATE",
    "AUTH_REASON_AUTH_FAILED",
    "AUTH_REASON_NO_ORGANIZATION",
    "AUTH_REASON_CONFIG_ERROR",
]
