"""
Housekeeping for auth tables that only grow.
"""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from ...database import transaction
from ...time import utc_now
from ..repositories.login_attempt_repository import LoginAttemptRepository
from ..repositories.oauth_state_repository import OAuthStateRepository
from ..repositories.security_log_repository import SecurityLogRepository
from ..repositories.session_repository import SessionRepository
from .exchange_codes import ExchangeCodeService
from .verification_service import VerificationService

logger = logging.getLogger(__name__)


class MaintenanceService:
    """Batch deletion of expired and out-of-retention records."""

    def __init__(
        self,
        db_session: Session,
        verification_service: VerificationService,
        exchange_codes: ExchangeCodeService,
        login_attempt_retention_days: int = 30,
        security_log_retention_days: int = 90,
    ):
        self.db = db_session
        self.verification_service = verification_service
        self.exchange_codes = exchange_codes
        self.login_attempt_retention = timedelta(days=login_attempt_retention_days)
        self.security_log_retention = timedelta(days=security_log_retention_days)
        self.sessions = SessionRepository(db_session)
        self.login_attempts = LoginAttemptRepository(db_session)
        self.security_log = SecurityLogRepository(db_session)
        self.oauth_states = OAuthStateRepository(db_session)

    def purge_expired_records(self) -> dict[str, int]:
        """
        Delete everything that can no longer affect an auth decision.

        Returns:
            Number of deleted rows per table
        """
        now = utc_now()
        with transaction(self.db):
            counts = {
                "sessions": self.sessions.delete_expired(),
                "oauth_exchange_codes": self.exchange_codes.delete_expired(),
                "oauth_states": self.oauth_states.delete_expired(),
                "verification_codes": self.verification_service.delete_expired(),
                "login_attempts": self.login_attempts.delete_older_than(
                    now - self.login_attempt_retention
                ),
                "security_logs": self.security_log.delete_older_than(
                    now - self.security_log_retention
                ),
            }

        logger.info(f"Purged expired auth records: {counts}")
        return counts
