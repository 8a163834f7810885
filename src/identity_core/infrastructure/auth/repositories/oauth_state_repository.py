"""
Pending browser-redirect logins.

A state is the CSRF token that round-trips through the provider's consent
page. Only its SHA-256 is stored, and each state can be consumed once.
"""

import hashlib
import logging
from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from ...time import utc_now
from ..constants import AuthProvider
from ..models import OAuthState

logger = logging.getLogger(__name__)


class OAuthStateRepository:
    """Persistence for ``OAuthState`` rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    @staticmethod
    def hash_state(state: str) -> str:
        return hashlib.sha256(state.encode("utf-8")).hexdigest()

    def create(
        self,
        state: str,
        provider: AuthProvider,
        redirect_uri: str,
        expires_at: datetime,
        code_verifier: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> OAuthState:
        record = OAuthState(
            state_hash=self.hash_state(state),
            provider=provider.value,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=expires_at,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def consume(self, state: str, provider: AuthProvider) -> OAuthState | None:
        """
        Mark a live state of this provider consumed.

        Returns:
            The state, or None if it is unknown, expired, issued for another
            provider or already consumed
        """
        now = utc_now()
        record = self.db.scalars(
            select(OAuthState)
            .where(
                OAuthState.state_hash == self.hash_state(state),
                OAuthState.provider == provider.value,
            )
            .execution_options(populate_existing=True)
        ).first()
        if record is None or record.consumed_at is not None or record.expires_at <= now:
            return None

        consumed = self.db.execute(
            update(OAuthState)
            .where(OAuthState.id == record.id, OAuthState.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not consumed.rowcount:
            logger.warning(f"{provider.value} login state consumed concurrently")
            return None
        return record

    def delete_expired(self) -> int:
        """Remove expired and consumed states."""
        result = self.db.execute(
            delete(OAuthState)
            .where(or_(OAuthState.expires_at < utc_now(), OAuthState.consumed_at.is_not(None)))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
