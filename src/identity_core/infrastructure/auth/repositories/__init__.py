"""Persistence for the auth entities."""

from .login_attempt_repository import LoginAttemptRepository
from .oauth_state_repository import OAuthStateRepository
from .security_log_repository import SecurityLogRepository
from .session_repository import SessionRepository
from .user_repository import AccountRepository, UserRepository, normalize_email

__all__ = [
    "AccountRepository",
    "LoginAttemptRepository",
    "OAuthStateRepository",
    "SecurityLogRepository",
    "SessionRepository",
    "UserRepository",
    "normalize_email",
]
