"""
Login attempt tracker.

Append-and-count log of login attempts per email and IP. Rows are never
updated; they only age out through retention cleanup.
"""

import logging
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..constants import LOCKOUT_FAILURE_REASONS, AuthProvider, LoginFailureReason
from ..models import LoginAttempt

logger = logging.getLogger(__name__)


class LoginAttemptRepository:
    """Persistence for ``LoginAttempt`` rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def create(
        self,
        email: str | None,
        provider: AuthProvider,
        success: bool,
        failure_reason: LoginFailureReason | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            email=email,
            provider=provider.value,
            success=success,
            failure_reason=failure_reason.value if failure_reason else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def count_recent_failures_by_email(self, email: str, since: datetime) -> int:
        """Credential failures for an email since ``since`` that count towards lockout."""
        return int(
            self.db.scalar(
                select(func.count(LoginAttempt.id)).where(
                    LoginAttempt.email == email,
                    LoginAttempt.success.is_(False),
                    LoginAttempt.failure_reason.in_([r.value for r in LOCKOUT_FAILURE_REASONS]),
                    LoginAttempt.created_at >= since,
                )
            )
            or 0
        )

    def count_recent_failures_by_ip(self, ip_address: str, since: datetime) -> int:
        return int(
            self.db.scalar(
                select(func.count(LoginAttempt.id)).where(
                    LoginAttempt.ip_address == ip_address,
                    LoginAttempt.success.is_(False),
                    LoginAttempt.created_at >= since,
                )
            )
            or 0
        )

    def find_recent_by_email(self, email: str, limit: int = 20) -> list[LoginAttempt]:
        return list(
            self.db.scalars(
                select(LoginAttempt)
                .where(LoginAttempt.email == email)
                .order_by(LoginAttempt.created_at.desc())
                .limit(limit)
            )
        )

    def delete_older_than(self, cutoff: datetime) -> int:
        result = self.db.execute(
            delete(LoginAttempt)
            .where(LoginAttempt.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount)
