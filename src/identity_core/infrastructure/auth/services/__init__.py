"""
Authentication service components.

Each flow lives in a focused service; ``AuthService`` orchestrates them
behind one interface.
"""

from .account_linking import AccountLinkingPolicy, LinkDecision, LinkOutcome
from .auth_service import AuthService
from .authentication import AuthenticationService
from .exchange_codes import ExchangeCodeService
from .maintenance import MaintenanceService
from .oauth_service import OAuthService
from .password_management import PasswordManagementService
from .password_service import PasswordHasher, PasswordService, PasswordValidator
from .registration import RegistrationService
from .session_manager import SessionManager
from .verification_service import VerificationService

__all__ = [
    "AccountLinkingPolicy",
    "AuthService",
    "AuthenticationService",
    "ExchangeCodeService",
    "LinkDecision",
    "LinkOutcome",
    "MaintenanceService",
    "OAuthService",
    "PasswordHasher",
    "PasswordManagementService",
    "PasswordService",
    "PasswordValidator",
    "RegistrationService",
    "SessionManager",
    "VerificationService",
]
