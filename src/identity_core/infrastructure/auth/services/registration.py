"""
User registration service.

Handles credential registration, email verification and resending of
verification codes.
"""

import asyncio
import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ....domain.exceptions import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ...database import transaction
from ..constants import AuthProvider, SecurityEvent, UserStatus, VerificationPurpose
from ..email import EmailSender
from ..repositories.login_attempt_repository import LoginAttemptRepository
from ..repositories.security_log_repository import SecurityLogRepository
from ..repositories.user_repository import AccountRepository, UserRepository, normalize_email
from ..types import AuthResult, RegistrationResult, RequestMetadata
from .account_linking import ensure_user_can_sign_in
from .password_service import PasswordService
from .session_manager import SessionManager
from .verification_service import VerificationService

logger = logging.getLogger(__name__)

GENERIC_RESEND_MESSAGE = "If the address is registered, a verification code has been sent"


class RegistrationService:
    """User registration service."""

    def __init__(
        self,
        db_session: Session,
        password_service: PasswordService,
        verification_service: VerificationService,
        session_manager: SessionManager,
        email_sender: EmailSender,
    ):
        self.db = db_session
        self.password_service = password_service
        self.verification_service = verification_service
        self.session_manager = session_manager
        self.email_sender = email_sender
        self.users = UserRepository(db_session)
        self.accounts = AccountRepository(db_session)
        self.login_attempts = LoginAttemptRepository(db_session)
        self.security_log = SecurityLogRepository(db_session)

    async def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        terms_agreed: bool = False,
        privacy_agreed: bool = False,
        marketing_agreed: bool = False,
        metadata: RequestMetadata | None = None,
    ) -> RegistrationResult:
        """
        Register a new credential user pending email verification.

        Args:
            email: User email address
            password: User password
            name: Display name
            terms_agreed: Whether the terms of service were accepted
            privacy_agreed: Whether the privacy policy was accepted
            marketing_agreed: Whether marketing messages were accepted
            metadata: Client context for audit logging

        Returns:
            Registration result

        Raises:
            ValidationError: If the email or password is invalid
            ConflictError: If the email is already registered
        """
        metadata = metadata or RequestMetadata()
        validated_email = self._validate_email(email)

        is_valid, errors = self.password_service.validate_password(password)
        if not is_valid:
            raise ValidationError(
                ErrorCode.WEAK_PASSWORD, "Password does not meet requirements", {"errors": errors}
            )

        if self.users.exists_by_email(validated_email):
            raise ConflictError(ErrorCode.EMAIL_ALREADY_REGISTERED, "Email already registered")

        password_hash = await asyncio.to_thread(self.password_service.hash_password, password)

        try:
            with transaction(self.db):
                user = self.users.create(
                    validated_email,
                    UserStatus.PENDING_VERIFY,
                    name=name,
                    terms_agreed=terms_agreed,
                    privacy_agreed=privacy_agreed,
                    marketing_agreed=marketing_agreed,
                )
                self.accounts.create_credential_account(str(user.id), password_hash)
                issued = self.verification_service.create_code(
                    str(user.id), VerificationPurpose.EMAIL_VERIFY
                )
                self.security_log.create(
                    SecurityEvent.REGISTRATION,
                    user_id=str(user.id),
                    ip_address=metadata.normalized_ip,
                    user_agent=metadata.user_agent,
                )
        except IntegrityError:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError(ErrorCode.EMAIL_ALREADY_REGISTERED, "Email already registered")

        logger.info(f"User registered: {user.id}")
        await self._send_code(str(user.email), issued.code, VerificationPurpose.EMAIL_VERIFY)

        return RegistrationResult(user_id=str(user.id), email=str(user.email))

    async def verify_email(
        self, email: str, code: str, metadata: RequestMetadata | None = None
    ) -> AuthResult:
        """
        Verify an email address with its code and sign the user in.

        Raises:
            NotFoundError: If no user has this email
            ConflictError: If the email is already verified
            UnauthorizedError: If the code is wrong, expired or consumed
            RateLimitedError: If the code exhausted its attempts
        """
        metadata = metadata or RequestMetadata()
        user = self.users.find_by_email(email)
        if user is None:
            raise NotFoundError(ErrorCode.USER_NOT_FOUND, "User not found")
        if user.status != UserStatus.PENDING_VERIFY.value:
            if user.is_email_verified:
                raise ConflictError(ErrorCode.EMAIL_ALREADY_VERIFIED, "Email already verified")
            ensure_user_can_sign_in(user)

        with transaction(self.db):
            if not self.verification_service.verify(
                str(user.id), code, VerificationPurpose.EMAIL_VERIFY
            ):
                raise UnauthorizedError(
                    ErrorCode.VERIFICATION_CODE_INVALID, "Invalid or expired verification code"
                )

            user.mark_verified()
            result = self.session_manager.create_session(user, metadata)
            self.login_attempts.create(
                str(user.email),
                AuthProvider.CREDENTIAL,
                success=True,
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
            )
            self.security_log.create(
                SecurityEvent.EMAIL_VERIFIED,
                user_id=str(user.id),
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
                metadata={"session_id": result.session_id},
            )

        logger.info(f"Email verified for user {user.id}")
        return result

    async def resend_verification(self, email: str) -> str:
        """
        Issue a fresh email verification code.

        Unknown addresses receive the same message as known ones.

        Raises:
            ConflictError: If the email is already verified
            RateLimitedError: If the resend cooldown has not elapsed
        """
        user = self.users.find_by_email(email)
        if user is None:
            return GENERIC_RESEND_MESSAGE
        if user.is_email_verified:
            raise ConflictError(ErrorCode.EMAIL_ALREADY_VERIFIED, "Email already verified")

        with transaction(self.db):
            issued = self.verification_service.create_code(
                str(user.id), VerificationPurpose.EMAIL_VERIFY
            )

        await self._send_code(str(user.email), issued.code, VerificationPurpose.EMAIL_VERIFY)
        return GENERIC_RESEND_MESSAGE

    async def _send_code(self, address: str, code: str, purpose: VerificationPurpose) -> None:
        """Deliver a code; failures are logged and never surfaced."""
        try:
            await self.email_sender.send(address, code, purpose)
        except Exception as e:
            logger.error(f"Failed to send {purpose.value} email to {address}: {e}")

    def _validate_email(self, email: str) -> str:
        """Validate and normalize email address."""
        try:
            valid_email = validate_email(email.strip(), check_deliverability=False)
            return normalize_email(valid_email.normalized)
        except EmailNotValidError as e:
            raise ValidationError(ErrorCode.INVALID_EMAIL, f"Invalid email: {e!s}")
