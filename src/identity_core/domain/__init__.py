"""Domain layer: error taxonomy shared by every auth operation."""

from .exceptions import (
    AuthError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    RateLimitedError,
    SecurityError,
    UnauthorizedError,
    ValidationError,
    to_error_payload,
)

__all__ = [
    "AuthError",
    "ConflictError",
    "ErrorCode",
    "NotFoundError",
    "RateLimitedError",
    "SecurityError",
    "UnauthorizedError",
    "ValidationError",
    "to_error_payload",
]
