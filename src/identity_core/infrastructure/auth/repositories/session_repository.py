"""
Session registry.

Persists one row per device login and implements the optimistic-concurrency
rotation guard used by refresh-token rotation.
"""

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Select, delete, or_, select, update
from sqlalchemy.orm import Session

from ...time import utc_now
from ..constants import PENDING_TOKEN_HASH_PREFIX, RevokeReason
from ..models import UserSession

logger = logging.getLogger(__name__)


class SessionRepository:
    """Session registry backed by the ``sessions`` table."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def create(
        self,
        user_id: str,
        token_family: str,
        expires_at: datetime,
        refresh_token_hash: str | None = None,
        device_fingerprint: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserSession:
        """
        Create a session at token version 1.

        When the refresh token hash is not known yet, a non-guessable
        placeholder keeps the unique constraint satisfied until
        ``update_refresh_token_hash`` writes the real one.
        """
        session = UserSession(
            user_id=user_id,
            token_family=token_family,
            token_version=1,
            refresh_token_hash=refresh_token_hash or f"{PENDING_TOKEN_HASH_PREFIX}{uuid4().hex}",
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=expires_at,
            last_used_at=utc_now(),
        )
        self.db.add(session)
        self.db.flush()
        return session

    def update_refresh_token_hash(self, session_id: str, refresh_token_hash: str) -> None:
        """Write the real refresh token hash of a freshly created session."""
        self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id)
            .values(refresh_token_hash=refresh_token_hash)
            .execution_options(synchronize_session="fetch")
        )

    def _first(self, query: Select) -> UserSession | None:
        # Bulk updates bypass the identity map, so always reload row state
        return self.db.scalars(query.execution_options(populate_existing=True)).first()

    def find_by_id(self, session_id: str) -> UserSession | None:
        return self.db.get(UserSession, session_id, populate_existing=True)

    def find_by_refresh_token_hash(self, refresh_token_hash: str) -> UserSession | None:
        return self._first(
            select(UserSession).where(UserSession.refresh_token_hash == refresh_token_hash)
        )

    def find_by_previous_token_hash(self, previous_token_hash: str) -> UserSession | None:
        return self._first(
            select(UserSession).where(UserSession.previous_token_hash == previous_token_hash)
        )

    def find_by_token_family(self, token_family: str) -> UserSession | None:
        """First non-revoked session of a token family."""
        return self._first(
            select(UserSession).where(
                UserSession.token_family == token_family,
                UserSession.revoked_at.is_(None),
            )
        )

    def find_active_by_user_id(self, user_id: str) -> list[UserSession]:
        """Non-revoked, unexpired sessions, most recently used first."""
        return list(
            self.db.scalars(
                select(UserSession)
                .where(
                    UserSession.user_id == user_id,
                    UserSession.revoked_at.is_(None),
                    UserSession.expires_at > utc_now(),
                )
                .order_by(UserSession.last_used_at.desc())
                .execution_options(populate_existing=True)
            )
        )

    def find_unrevoked_ids(
        self, user_id: str | None = None, token_family: str | None = None
    ) -> list[str]:
        """Ids of sessions a bulk revocation would touch."""
        query = select(UserSession.id).where(UserSession.revoked_at.is_(None))
        if user_id is not None:
            query = query.where(UserSession.user_id == user_id)
        if token_family is not None:
            query = query.where(UserSession.token_family == token_family)
        return list(self.db.scalars(query))

    def rotate_token(
        self,
        session_id: str,
        refresh_token_hash: str,
        token_version: int,
        previous_token_hash: str,
        expected_token_version: int,
    ) -> UserSession | None:
        """
        Compare-and-swap the refresh token of a session.

        The update only applies while the row is unrevoked and still at
        ``expected_token_version``.

        Args:
            session_id: Session identifier
            refresh_token_hash: Hash of the newly issued refresh token
            token_version: New token version
            previous_token_hash: Hash of the refresh token just consumed
            expected_token_version: Version read before rotating

        Returns:
            The updated session, or None when another writer got there first
            or the session was revoked
        """
        result = self.db.execute(
            update(UserSession)
            .where(
                UserSession.id == session_id,
                UserSession.token_version == expected_token_version,
                UserSession.revoked_at.is_(None),
            )
            .values(
                refresh_token_hash=refresh_token_hash,
                token_version=token_version,
                previous_token_hash=previous_token_hash,
                last_used_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.debug(
                f"Rotation of session {session_id} at version {expected_token_version} "
                "matched no row"
            )
            return None

        return self.find_by_id(session_id)

    def revoke(self, session_id: str, reason: RevokeReason) -> bool:
        """Revoke one session. Already revoked sessions keep their original reason."""
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id, UserSession.revoked_at.is_(None))
            .values(revoked_at=utc_now(), revoked_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def revoke_by_token_family(self, token_family: str, reason: RevokeReason) -> int:
        """Revoke every unrevoked session of a token family."""
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.token_family == token_family, UserSession.revoked_at.is_(None))
            .values(revoked_at=utc_now(), revoked_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount)

    def revoke_all_by_user_id(
        self, user_id: str, reason: RevokeReason, exclude_session_id: str | None = None
    ) -> int:
        """Revoke every unrevoked session of a user, optionally sparing one."""
        statement = update(UserSession).where(
            UserSession.user_id == user_id, UserSession.revoked_at.is_(None)
        )
        if exclude_session_id:
            statement = statement.where(UserSession.id != exclude_session_id)

        result = self.db.execute(
            statement.values(revoked_at=utc_now(), revoked_reason=reason.value).execution_options(
                synchronize_session=False
            )
        )
        return int(result.rowcount)

    def delete_expired(self) -> int:
        """Batch delete sessions that are expired or revoked."""
        result = self.db.execute(
            delete(UserSession)
            .where(or_(UserSession.expires_at < utc_now(), UserSession.revoked_at.is_not(None)))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount)
