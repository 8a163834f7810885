"""
Authentication core.

Credential and social login, email verification, password recovery,
refresh-token rotation with reuse detection and account linking, backed by
SQLAlchemy and signed with RS256 JWTs.
"""

from .constants import (
    AuthProvider,
    LoginFailureReason,
    RevokeReason,
    SecurityEvent,
    UserStatus,
    VerificationPurpose,
)
from .email import EmailSender, LoggingEmailSender
from .jwt_service import InvalidTokenException, JWTService, TokenExpiredException
from .models import (
    Account,
    Base,
    LoginAttempt,
    OAuthExchangeCode,
    SecurityLogEntry,
    User,
    UserConsent,
    UserProfile,
    UserSession,
    VerificationCode,
)
from .services import AuthService
from .types import (
    AuthenticatedPrincipal,
    AuthResult,
    LinkedAccountInfo,
    RegistrationResult,
    RequestMetadata,
    SessionInfo,
    TokenPair,
    VerifiedProfile,
)

__all__ = [
    # Services
    "AuthService",
    "JWTService",
    "EmailSender",
    "LoggingEmailSender",
    # Token errors
    "InvalidTokenException",
    "TokenExpiredException",
    # Constants
    "AuthProvider",
    "LoginFailureReason",
    "RevokeReason",
    "SecurityEvent",
    "UserStatus",
    "VerificationPurpose",
    # Models
    "Account",
    "Base",
    "LoginAttempt",
    "OAuthExchangeCode",
    "SecurityLogEntry",
    "User",
    "UserConsent",
    "UserProfile",
    "UserSession",
    "VerificationCode",
    # Types
    "AuthResult",
    "AuthenticatedPrincipal",
    "LinkedAccountInfo",
    "RegistrationResult",
    "RequestMetadata",
    "SessionInfo",
    "TokenPair",
    "VerifiedProfile",
]
