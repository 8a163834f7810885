"""
Password recovery and change.
"""

import asyncio
import logging

from sqlalchemy.orm import Session

from ....domain.exceptions import (
    ErrorCode,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from ...database import transaction
from ..constants import RevokeReason, SecurityEvent, VerificationPurpose
from ..email import EmailSender
from ..repositories.security_log_repository import SecurityLogRepository
from ..repositories.user_repository import AccountRepository, UserRepository
from ..types import RequestMetadata
from .password_service import PasswordService
from .session_manager import SessionManager
from .verification_service import VerificationService

logger = logging.getLogger(__name__)

GENERIC_RESET_MESSAGE = "If the address is registered, a password reset code has been sent"


class PasswordManagementService:
    """Forgot, reset and change password flows."""

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
        self.security_log = SecurityLogRepository(db_session)

    async def forgot_password(self, email: str) -> str:
        """
        Send a password reset code if the email belongs to a credential user.

        The response never reveals whether the address is registered, so a
        cooldown hit is logged rather than surfaced.
        """
        user = self.users.find_by_email(email)
        if user is None or self.accounts.find_credential_account(str(user.id)) is None:
            return GENERIC_RESET_MESSAGE

        try:
            with transaction(self.db):
                issued = self.verification_service.create_code(
                    str(user.id), VerificationPurpose.PASSWORD_RESET
                )
        except RateLimitedError:
            logger.info(f"Password reset for user {user.id} requested during cooldown")
            return GENERIC_RESET_MESSAGE

        try:
            await self.email_sender.send(
                str(user.email), issued.code, VerificationPurpose.PASSWORD_RESET
            )
        except Exception as e:
            logger.error(f"Failed to send password reset email to {user.email}: {e}")

        return GENERIC_RESET_MESSAGE

    async def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        metadata: RequestMetadata | None = None,
    ) -> int:
        """
        Set a new password with a reset code and revoke every session.

        Returns:
            Number of sessions revoked

        Raises:
            ValidationError: If the new password violates the policy
            UnauthorizedError: If the code is wrong, expired or consumed
            RateLimitedError: If the code exhausted its attempts
        """
        metadata = metadata or RequestMetadata()
        self._validate_new_password(new_password)

        user = self.users.find_by_email(email)
        account = self.accounts.find_credential_account(str(user.id)) if user else None
        if user is None or account is None:
            raise UnauthorizedError(
                ErrorCode.VERIFICATION_CODE_INVALID, "Invalid or expired verification code"
            )

        new_hash = await asyncio.to_thread(self.password_service.hash_password, new_password)

        with self.session_manager.revocation():
            if not self.verification_service.verify(
                str(user.id), code, VerificationPurpose.PASSWORD_RESET
            ):
                raise UnauthorizedError(
                    ErrorCode.VERIFICATION_CODE_INVALID, "Invalid or expired verification code"
                )

            self.accounts.update_password(account, new_hash)
            revoked = self.session_manager.logout_all(
                str(user.id), metadata, reason=RevokeReason.PASSWORD_RESET
            )
            self.security_log.create(
                SecurityEvent.PASSWORD_CHANGED,
                user_id=str(user.id),
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
                metadata={"method": "reset", "revoked_sessions": revoked},
            )

        logger.info(f"Password reset for user {user.id}, revoked {revoked} session(s)")
        return revoked

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        metadata: RequestMetadata | None = None,
    ) -> None:
        """
        Change the password of a signed-in user.

        Raises:
            NotFoundError: If the user has no credential account
            UnauthorizedError: If the current password is wrong
            ValidationError: If the new password violates the policy
        """
        metadata = metadata or RequestMetadata()
        account = self.accounts.find_credential_account(user_id)
        if account is None or not account.password_hash:
            raise NotFoundError(ErrorCode.ACCOUNT_NOT_FOUND, "Credential account not found")

        if not await asyncio.to_thread(
            self.password_service.verify_password, current_password, str(account.password_hash)
        ):
            raise UnauthorizedError(ErrorCode.INVALID_CREDENTIALS, "Current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                ErrorCode.SAME_PASSWORD, "New password must differ from the current one"
            )
        self._validate_new_password(new_password)

        new_hash = await asyncio.to_thread(self.password_service.hash_password, new_password)
        with transaction(self.db):
            self.accounts.update_password(account, new_hash)
            self.security_log.create(
                SecurityEvent.PASSWORD_CHANGED,
                user_id=user_id,
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
                metadata={"method": "change"},
            )

        logger.info(f"Password changed for user {user_id}")

    def _validate_new_password(self, password: str) -> None:
        is_valid, errors = self.password_service.validate_password(password)
        if not is_valid:
            raise ValidationError(
                ErrorCode.WEAK_PASSWORD, "Password does not meet requirements", {"errors": errors}
            )
