"""
Tests for the auth error taxonomy.
"""

import logging

import pytest

from identity_core.domain.exceptions import (
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


class TestAuthErrors:
    """Test structured error payloads."""

    @pytest.mark.parametrize(
        "error_class, kind",
        [
            (ValidationError, "validation_error"),
            (NotFoundError, "not_found"),
            (ConflictError, "conflict"),
            (UnauthorizedError, "unauthorized"),
            (SecurityError, "security_error"),
        ],
    )
    def test_kinds(self, error_class, kind):
        error = error_class("SOME_CODE", "Something happened")

        assert isinstance(error, AuthError)
        assert error.to_dict() == {
            "error": kind,
            "code": "SOME_CODE",
            "message": "Something happened",
        }

    def test_details_included_when_present(self):
        error = ValidationError(ErrorCode.WEAK_PASSWORD, "Weak", {"errors": ["too short"]})

        payload = error.to_dict()
        assert payload["details"] == {"errors": ["too short"]}
        assert str(error) == "Weak"

    def test_rate_limited_retry_after(self):
        error = RateLimitedError(ErrorCode.ACCOUNT_LOCKED, "Locked", retry_after=900)

        assert error.to_dict() == {
            "error": "rate_limited",
            "code": "ACCOUNT_LOCKED",
            "message": "Locked",
            "retry_after": 900,
        }
        assert "retry_after" not in RateLimitedError("X", "y").to_dict()


class TestErrorPayload:
    """Test mapping arbitrary exceptions to caller-facing payloads."""

    def test_auth_error_passed_through(self):
        error = SecurityError(ErrorCode.TOKEN_REUSE_DETECTED, "Reuse")
        assert to_error_payload(error)["code"] == ErrorCode.TOKEN_REUSE_DETECTED

    def test_unexpected_error_is_generic(self, caplog):
        with caplog.at_level(logging.ERROR):
            payload = to_error_payload(RuntimeError("db password=hunter2 leaked"))

        assert payload == {
            "error": "internal_error",
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
        }
        assert "RuntimeError" in caplog.text
