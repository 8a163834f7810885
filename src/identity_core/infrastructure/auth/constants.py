"""
Enumerations and fixed values shared across the auth package.
"""

from enum import Enum


class UserStatus(str, Enum):
    """Lifecycle status of a user."""

    PENDING_VERIFY = "PENDING_VERIFY"
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"
    SUSPENDED = "SUSPENDED"


class AuthProvider(str, Enum):
    """Account providers. CREDENTIAL is the email/password account."""

    CREDENTIAL = "CREDENTIAL"
    APPLE = "APPLE"
    GOOGLE = "GOOGLE"
    KAKAO = "KAKAO"
    NAVER = "NAVER"

    @property
    def is_oauth(self) -> bool:
        return self is not AuthProvider.CREDENTIAL


# Providers whose verification cryptographically attests control of the email
TRUSTED_EMAIL_PROVIDERS = frozenset({AuthProvider.APPLE, AuthProvider.GOOGLE})


class VerificationPurpose(str, Enum):
    """What a one-time code is for."""

    EMAIL_VERIFY = "EMAIL_VERIFY"
    PASSWORD_RESET = "PASSWORD_RESET"


class SecurityEvent(str, Enum):
    """Audited security transitions."""

    REGISTRATION = "REGISTRATION"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_REVOKED_ALL = "SESSION_REVOKED_ALL"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    OAUTH_AUTO_LINKED = "OAUTH_AUTO_LINKED"
    OAUTH_LINK_REQUIRED = "OAUTH_LINK_REQUIRED"
    ACCOUNT_LINKED = "ACCOUNT_LINKED"
    ACCOUNT_UNLINKED = "ACCOUNT_UNLINKED"


class RevokeReason(str, Enum):
    """Why a session was revoked."""

    USER_LOGOUT = "USER_LOGOUT"
    USER_LOGOUT_ALL = "USER_LOGOUT_ALL"
    USER_REVOKE = "USER_REVOKE"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    PASSWORD_RESET = "PASSWORD_RESET"


class LoginFailureReason(str, Enum):
    """Recorded reason of a failed login attempt."""

    USER_NOT_FOUND = "USER_NOT_FOUND"
    NO_CREDENTIAL_ACCOUNT = "NO_CREDENTIAL_ACCOUNT"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    OAUTH_TOKEN_INVALID = "OAUTH_TOKEN_INVALID"
    OAUTH_LINK_REQUIRED = "OAUTH_LINK_REQUIRED"
    OAUTH_STATE_INVALID = "OAUTH_STATE_INVALID"


# Failures that count towards the credential lockout threshold
LOCKOUT_FAILURE_REASONS = frozenset(
    {
        LoginFailureReason.USER_NOT_FOUND,
        LoginFailureReason.NO_CREDENTIAL_ACCOUNT,
        LoginFailureReason.INVALID_PASSWORD,
    }
)

PLACEHOLDER_EMAIL_DOMAIN = "social.local"
PENDING_TOKEN_HASH_PREFIX = "pending_"
DEVICE_FINGERPRINT_MAX_LENGTH = 64
