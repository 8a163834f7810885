"""Logging and observability."""

from .logging import (
    AuthJSONFormatter,
    ContextFilter,
    SensitiveDataConfig,
    SensitiveDataMasker,
    configure_logging,
    correlation_context,
    mask_sensitive_data,
    user_context,
)

__all__ = [
    "AuthJSONFormatter",
    "ContextFilter",
    "SensitiveDataConfig",
    "SensitiveDataMasker",
    "configure_logging",
    "correlation_context",
    "mask_sensitive_data",
    "user_context",
]
