"""
Domain-level exceptions for the identity core.

Every caller-facing failure is one of the typed errors below. Each carries a
stable machine-readable ``code`` and serializes to a structured payload via
``to_dict()``; anything else escaping an operation is reported generically.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class ErrorCode:
    """Stable error codes exposed to callers."""

    # Validation
    INVALID_EMAIL = "INVALID_EMAIL"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    SAME_PASSWORD = "SAME_PASSWORD"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    CANNOT_UNLINK_LAST_ACCOUNT = "CANNOT_UNLINK_LAST_ACCOUNT"
    INVALID_REDIRECT_URI = "INVALID_REDIRECT_URI"

    # Not found
    USER_NOT_FOUND = "USER_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"

    # Conflict
    EMAIL_ALREADY_REGISTERED = "EMAIL_ALREADY_REGISTERED"
    EMAIL_ALREADY_VERIFIED = "EMAIL_ALREADY_VERIFIED"
    OAUTH_ACCOUNT_ALREADY_LINKED = "OAUTH_ACCOUNT_ALREADY_LINKED"
    PROVIDER_ALREADY_LINKED = "PROVIDER_ALREADY_LINKED"
    SOCIAL_ACCOUNT_NOT_LINKED = "SOCIAL_ACCOUNT_NOT_LINKED"

    # Unauthorized
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCESS_TOKEN_INVALID = "ACCESS_TOKEN_INVALID"
    ACCESS_TOKEN_EXPIRED = "ACCESS_TOKEN_EXPIRED"
    REFRESH_TOKEN_INVALID = "REFRESH_TOKEN_INVALID"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    TOKEN_ROTATION_CONFLICT = "TOKEN_ROTATION_CONFLICT"
    VERIFICATION_CODE_INVALID = "VERIFICATION_CODE_INVALID"
    OAUTH_TOKEN_INVALID = "OAUTH_TOKEN_INVALID"
    OAUTH_PROVIDER_UNAVAILABLE = "OAUTH_PROVIDER_UNAVAILABLE"
    EXCHANGE_CODE_INVALID = "EXCHANGE_CODE_INVALID"
    OAUTH_STATE_INVALID = "OAUTH_STATE_INVALID"

    # Rate limited
    VERIFICATION_RESEND_TOO_SOON = "VERIFICATION_RESEND_TOO_SOON"
    VERIFICATION_MAX_ATTEMPTS = "VERIFICATION_MAX_ATTEMPTS"

    # Security
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"

    # Generic
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AuthError(Exception):
    """Base exception for all caller-facing auth failures."""

    kind = "auth_error"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to a structured, machine-readable payload."""
        payload: dict[str, Any] = {
            "error": self.kind,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(AuthError):
    """Raised for malformed input such as a password policy violation."""

    kind = "validation_error"


class NotFoundError(AuthError):
    """Raised when a user, session or account does not exist."""

    kind = "not_found"


class ConflictError(AuthError):
    """Raised when a uniqueness rule would be violated."""

    kind = "conflict"


class UnauthorizedError(AuthError):
    """Raised for bad credentials and invalid, expired or revoked tokens."""

    kind = "unauthorized"


class RateLimitedError(AuthError):
    """Raised when a cooldown, attempt limit or lockout is in effect."""

    kind = "rate_limited"

    def __init__(
        self,
        code: str,
        message: str,
        retry_after: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code, message, details)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        """Convert to a structured payload including the retry hint."""
        payload = super().to_dict()
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


class SecurityError(AuthError):
    """
    Raised when a security invariant is violated.

    Refresh token reuse is always paired with revocation of the whole
    token family before this is raised.
    """

    kind = "security_error"


def to_error_payload(error: Exception) -> dict[str, Any]:
    """
    Map any exception to a caller-facing error payload.

    Typed auth errors are passed through as-is. Anything else is logged with
    its traceback and reported generically so internals never leak.

    Args:
        error: The exception raised by an operation

    Returns:
        Structured error payload
    """
    if isinstance(error, AuthError):
        return error.to_dict()

    logger.error(f"Unexpected error in auth operation: {error!r}", exc_info=error)
    return {
        "error": "internal_error",
        "code": ErrorCode.INTERNAL_ERROR,
        "message": "An unexpected error occurred",
    }
