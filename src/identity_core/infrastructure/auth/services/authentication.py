"""
Authentication service.

Handles credential login, login attempt recording and the sliding-window
account lockout.
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from ....domain.exceptions import ErrorCode, RateLimitedError, UnauthorizedError
from ...database import transaction
from ...time import utc_now
from ..constants import AuthProvider, LoginFailureReason, SecurityEvent, UserStatus
from ..models import User
from ..repositories.login_attempt_repository import LoginAttemptRepository
from ..repositories.security_log_repository import SecurityLogRepository
from ..repositories.user_repository import AccountRepository, UserRepository, normalize_email
from ..types import AuthResult, RequestMetadata
from .password_service import PasswordService
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


class AuthenticationService:
    """User authentication service."""

    def __init__(
        self,
        db_session: Session,
        password_service: PasswordService,
        session_manager: SessionManager,
        max_login_attempts: int = 5,
        lockout_duration_minutes: int = 15,
    ):
        self.db = db_session
        self.password_service = password_service
        self.session_manager = session_manager
        self.max_login_attempts = max_login_attempts
        self.lockout_duration = timedelta(minutes=lockout_duration_minutes)
        self.users = UserRepository(db_session)
        self.accounts = AccountRepository(db_session)
        self.login_attempts = LoginAttemptRepository(db_session)
        self.security_log = SecurityLogRepository(db_session)

    async def login(
        self, email: str, password: str, metadata: RequestMetadata | None = None
    ) -> AuthResult:
        """
        Authenticate with email and password.

        Args:
            email: User email
            password: User password
            metadata: Client context for session attribution and audit

        Returns:
            Authentication result for a new session

        Raises:
            RateLimitedError: If the account is locked out by failed attempts
            UnauthorizedError: If credentials are invalid or the account may
                not sign in
        """
        metadata = metadata or RequestMetadata()
        email = normalize_email(email)

        recent_failures = self.login_attempts.count_recent_failures_by_email(
            email, utc_now() - self.lockout_duration
        )
        if recent_failures >= self.max_login_attempts:
            self._record_failure(email, LoginFailureReason.ACCOUNT_LOCKED, metadata)
            logger.warning(f"Login rejected for locked out email {email}")
            raise self._lockout_error()

        user = self.users.find_by_email(email)
        if user is None:
            self._record_failure(email, LoginFailureReason.USER_NOT_FOUND, metadata)
            raise UnauthorizedError(ErrorCode.INVALID_CREDENTIALS, "Invalid email or password")

        account = self.accounts.find_credential_account(str(user.id))
        if account is None or not account.password_hash:
            self._record_failure(email, LoginFailureReason.NO_CREDENTIAL_ACCOUNT, metadata)
            raise UnauthorizedError(ErrorCode.INVALID_CREDENTIALS, "Invalid email or password")

        password_hash = str(account.password_hash)
        if not await asyncio.to_thread(
            self.password_service.verify_password, password, password_hash
        ):
            self._record_failure(email, LoginFailureReason.INVALID_PASSWORD, metadata)
            remaining = self.max_login_attempts - recent_failures - 1
            if remaining <= 0:
                logger.warning(f"Account locked after {self.max_login_attempts} failures: {email}")
                raise self._lockout_error()
            raise UnauthorizedError(
                ErrorCode.INVALID_CREDENTIALS,
                "Invalid email or password",
                {"remaining_attempts": remaining},
            )

        self._check_status(user, metadata)

        with transaction(self.db):
            new_hash = await asyncio.to_thread(
                self.password_service.rehash_if_needed, password, password_hash
            )
            if new_hash is not None:
                self.accounts.update_password(account, new_hash)
                logger.info(f"Rehashed password with current parameters for user {user.id}")

            result = self.session_manager.create_session(user, metadata)
            self.login_attempts.create(
                email,
                AuthProvider.CREDENTIAL,
                success=True,
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
            )
            self.security_log.create(
                SecurityEvent.LOGIN_SUCCESS,
                user_id=str(user.id),
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
                metadata={"session_id": result.session_id, "provider": "CREDENTIAL"},
            )

        logger.info(f"User logged in: {user.id} from {metadata.normalized_ip}")
        return result

    def _check_status(self, user: User, metadata: RequestMetadata) -> None:
        """Reject users whose status forbids sign-in after a correct password."""
        if user.status == UserStatus.PENDING_VERIFY.value:
            self._record_failure(str(user.email), LoginFailureReason.EMAIL_NOT_VERIFIED, metadata)
            raise UnauthorizedError(ErrorCode.EMAIL_NOT_VERIFIED, "Email is not verified")
        if user.status == UserStatus.LOCKED.value:
            self._record_failure(str(user.email), LoginFailureReason.ACCOUNT_LOCKED, metadata)
            raise UnauthorizedError(ErrorCode.ACCOUNT_LOCKED, "Account is locked")
        if user.status == UserStatus.SUSPENDED.value:
            self._record_failure(str(user.email), LoginFailureReason.ACCOUNT_SUSPENDED, metadata)
            raise UnauthorizedError(ErrorCode.ACCOUNT_SUSPENDED, "Account is suspended")

    def _record_failure(
        self, email: str, reason: LoginFailureReason, metadata: RequestMetadata
    ) -> None:
        """Record a failed attempt and commit it before the error propagates."""
        self.login_attempts.create(
            email,
            AuthProvider.CREDENTIAL,
            success=False,
            failure_reason=reason,
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
        )
        self.db.commit()
        logger.info(f"Failed login for {email}: {reason.value}")

    def _lockout_error(self) -> RateLimitedError:
        return RateLimitedError(
            ErrorCode.ACCOUNT_LOCKED,
            "Too many failed login attempts, account temporarily locked",
            retry_after=int(self.lockout_duration.total_seconds()),
        )
