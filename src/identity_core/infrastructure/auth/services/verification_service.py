"""
Verification code service.

Issues fixed-length numeric one-time codes for email verification and
password reset. Only the SHA-256 of a code is stored.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from ....domain.exceptions import ErrorCode, RateLimitedError
from ...time import utc_now
from ..constants import VerificationPurpose
from ..models import VerificationCode

logger = logging.getLogger(__name__)


@dataclass
class IssuedCode:
    """A freshly issued code. The plain value only lives in memory."""

    code: str
    expires_at: datetime


class VerificationService:
    """One-time code issuance and verification."""

    def __init__(
        self,
        db_session: Session,
        code_length: int = 6,
        expiry_minutes: int = 10,
        max_attempts: int = 5,
        resend_cooldown_seconds: int = 60,
    ):
        self.db = db_session
        self.code_length = code_length
        self.expiry = timedelta(minutes=expiry_minutes)
        self.max_attempts = max_attempts
        self.resend_cooldown = timedelta(seconds=resend_cooldown_seconds)

    @staticmethod
    def hash_code(code: str) -> str:
        return hashlib.sha256(code.encode("utf-8")).hexdigest()

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(10**self.code_length):0{self.code_length}d}"

    def create_code(self, user_id: str, purpose: VerificationPurpose) -> IssuedCode:
        """
        Issue a new code, superseding any unconsumed code of the same purpose.

        Args:
            user_id: Owner of the code
            purpose: What the code verifies

        Returns:
            The plain code and its expiry

        Raises:
            RateLimitedError: If the resend cooldown has not elapsed
        """
        now = utc_now()
        self._check_cooldown(user_id, purpose, now)

        self.db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose.value,
                VerificationCode.consumed_at.is_(None),
                VerificationCode.invalidated_at.is_(None),
            )
            .values(invalidated_at=now)
            .execution_options(synchronize_session=False)
        )

        code = self._generate_code()
        record = VerificationCode(
            user_id=user_id,
            purpose=purpose.value,
            code_hash=self.hash_code(code),
            attempts=0,
            created_at=now,
            expires_at=now + self.expiry,
        )
        self.db.add(record)
        self.db.flush()

        logger.info(f"Issued {purpose.value} code for user {user_id}")
        return IssuedCode(code=code, expires_at=record.expires_at)

    def _check_cooldown(self, user_id: str, purpose: VerificationPurpose, now: datetime) -> None:
        latest = self.db.scalars(
            select(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose.value,
            )
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
        ).first()

        if latest is None:
            return

        available_at = latest.created_at + self.resend_cooldown
        if available_at > now:
            retry_after = max(1, int((available_at - now).total_seconds()))
            raise RateLimitedError(
                ErrorCode.VERIFICATION_RESEND_TOO_SOON,
                "A new code was requested too soon",
                retry_after=retry_after,
            )

    def verify(self, user_id: str, code: str, purpose: VerificationPurpose) -> bool:
        """
        Check a code and consume it on success.

        A wrong guess increments the attempt counter and is committed
        immediately so that rolling back the caller's transaction cannot
        erase it. Once the counter reaches the maximum the code is dead
        even for the correct value.

        Args:
            user_id: Owner of the code
            code: Code presented by the user
            purpose: What the code verifies

        Returns:
            True if the code matched and was consumed, False if there is no
            live code or it did not match

        Raises:
            RateLimitedError: If the code exhausted its attempts
        """
        now = utc_now()
        record = self.db.scalars(
            select(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose.value,
                VerificationCode.consumed_at.is_(None),
                VerificationCode.invalidated_at.is_(None),
                VerificationCode.expires_at > now,
            )
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).first()

        if record is None:
            logger.info(f"No live {purpose.value} code for user {user_id}")
            return False

        if record.attempts >= self.max_attempts:
            raise RateLimitedError(
                ErrorCode.VERIFICATION_MAX_ATTEMPTS,
                "Too many incorrect attempts, request a new code",
            )

        if not hmac.compare_digest(record.code_hash, self.hash_code(code.strip())):
            self.db.execute(
                update(VerificationCode)
                .where(VerificationCode.id == record.id)
                .values(attempts=VerificationCode.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            logger.info(f"Incorrect {purpose.value} code for user {user_id}")
            return False

        # Conditional consume so a code can never be used twice
        result = self.db.execute(
            update(VerificationCode)
            .where(VerificationCode.id == record.id, VerificationCode.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def delete_expired(self) -> int:
        """Remove codes that can no longer be used."""
        result = self.db.execute(
            delete(VerificationCode)
            .where(
                or_(
                    VerificationCode.expires_at < utc_now(),
                    VerificationCode.consumed_at.is_not(None),
                    VerificationCode.invalidated_at.is_not(None),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount)
