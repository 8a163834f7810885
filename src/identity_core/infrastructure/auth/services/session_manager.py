"""
Session management service.

Handles session creation and token issuance, refresh-token rotation with
reuse detection, revocation and per-request session validity checks.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from ....domain.exceptions import (
    ErrorCode,
    NotFoundError,
    SecurityError,
    UnauthorizedError,
)
from ...cache.session_cache import CachedSessionState, SessionValidityCache
from ...database import transaction
from ...time import utc_now
from ..constants import RevokeReason, SecurityEvent
from ..jwt_service import InvalidTokenException, JWTService, TokenExpiredException
from ..models import User, UserSession
from ..repositories.security_log_repository import SecurityLogRepository
from ..repositories.session_repository import SessionRepository
from ..repositories.user_repository import UserRepository
from ..types import AuthenticatedPrincipal, AuthResult, RequestMetadata, SessionInfo
from .account_linking import ensure_user_can_sign_in

logger = logging.getLogger(__name__)


class SessionManager:
    """Session management service."""

    def __init__(
        self,
        db_session: Session,
        jwt_service: JWTService,
        session_cache: SessionValidityCache,
    ):
        self.db = db_session
        self.jwt_service = jwt_service
        self.cache = session_cache
        self.sessions = SessionRepository(db_session)
        self.users = UserRepository(db_session)
        self.security_log = SecurityLogRepository(db_session)
        self._pending_invalidations: set[str] = set()

    def create_session(self, user: User, metadata: RequestMetadata) -> AuthResult:
        """
        Create a session for a user and issue its first token pair.

        Runs inside the caller's transaction.

        Args:
            user: Authenticated user
            metadata: Client context for attribution

        Returns:
            Authentication result with the new session id
        """
        token_family = self.jwt_service.generate_token_family()
        session = self.sessions.create(
            user_id=str(user.id),
            token_family=token_family,
            expires_at=utc_now() + self.jwt_service.refresh_token_ttl,
            device_fingerprint=metadata.device_fingerprint,
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
        )

        pair = self.jwt_service.generate_token_pair(
            user_id=str(user.id),
            email=str(user.email),
            session_id=str(session.id),
            token_family=token_family,
            token_version=1,
        )
        self.sessions.update_refresh_token_hash(
            str(session.id), self.jwt_service.hash_refresh_token(pair.refresh_token)
        )

        logger.info(f"Session {session.id} created for user {user.id}")
        return AuthResult.from_pair(str(user.id), str(session.id), pair)

    async def refresh_tokens(self, refresh_token: str, metadata: RequestMetadata) -> AuthResult:
        """
        Rotate a refresh token.

        Presenting a refresh token that an earlier rotation already spent
        revokes the whole token family.

        Args:
            refresh_token: Refresh token presented by the client
            metadata: Client context for audit logging

        Returns:
            New token pair bound to the same session and family

        Raises:
            UnauthorizedError: If the token or its session is not usable
            SecurityError: If token reuse is detected
        """
        payload = self.jwt_service.verify_refresh_token(refresh_token)
        if payload is None or not payload.get("sid"):
            raise UnauthorizedError(ErrorCode.REFRESH_TOKEN_INVALID, "Invalid refresh token")

        token_hash = self.jwt_service.hash_refresh_token(refresh_token)
        session = self.sessions.find_by_refresh_token_hash(token_hash)

        if session is None:
            spent = self.sessions.find_by_previous_token_hash(token_hash)
            if spent is not None:
                self._handle_token_reuse(spent, metadata)
            raise UnauthorizedError(ErrorCode.SESSION_NOT_FOUND, "Session not found")

        if str(session.id) != payload["sid"] or str(session.user_id) != payload["sub"]:
            logger.warning(f"Refresh token claims do not match session {session.id}")
            raise UnauthorizedError(ErrorCode.REFRESH_TOKEN_INVALID, "Invalid refresh token")
        if session.is_revoked():
            raise UnauthorizedError(ErrorCode.SESSION_REVOKED, "Session has been revoked")
        if session.is_expired():
            raise UnauthorizedError(ErrorCode.SESSION_EXPIRED, "Session has expired")

        user = self.users.find_by_id(str(session.user_id))
        if user is None:
            raise UnauthorizedError(ErrorCode.SESSION_NOT_FOUND, "Session not found")
        ensure_user_can_sign_in(user)

        expected_version = int(session.token_version)
        pair = self.jwt_service.generate_token_pair(
            user_id=str(user.id),
            email=str(user.email),
            session_id=str(session.id),
            token_family=str(session.token_family),
            token_version=expected_version + 1,
        )
        rotated = self.sessions.rotate_token(
            str(session.id),
            refresh_token_hash=self.jwt_service.hash_refresh_token(pair.refresh_token),
            token_version=expected_version + 1,
            previous_token_hash=token_hash,
            expected_token_version=expected_version,
        )
        if rotated is None:
            self._handle_lost_rotation(str(session.id), expected_version)

        self.security_log.create(
            SecurityEvent.TOKEN_REFRESH,
            user_id=str(user.id),
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={"session_id": str(session.id), "token_version": expected_version + 1},
        )

        return AuthResult.from_pair(str(user.id), str(session.id), pair)

    def _handle_token_reuse(self, spent: UserSession, metadata: RequestMetadata) -> None:
        """Revoke the family of a replayed token, persist the evidence and fail."""
        token_family = str(spent.token_family)
        affected = self.sessions.find_unrevoked_ids(token_family=token_family)
        revoked = self.sessions.revoke_by_token_family(
            token_family, RevokeReason.TOKEN_REUSE_DETECTED
        )
        self.security_log.create(
            SecurityEvent.SUSPICIOUS_ACTIVITY,
            user_id=str(spent.user_id),
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={
                "reason": "refresh_token_reuse",
                "token_family": token_family,
                "session_id": str(spent.id),
                "revoked_sessions": revoked,
            },
        )
        # Persist the revocation before failing the request
        self.db.commit()
        self.cache.invalidate_many(affected)

        logger.warning(
            f"Refresh token reuse detected for user {spent.user_id}, "
            f"revoked {revoked} session(s) of family {token_family}"
        )
        raise SecurityError(
            ErrorCode.TOKEN_REUSE_DETECTED,
            "Refresh token reuse detected, all sessions of this login were revoked",
        )

    def _handle_lost_rotation(self, session_id: str, expected_version: int) -> None:
        """
        Fail a request whose compare-and-swap matched no row.

        A session revoked for reuse in the meantime is reported as a
        security error; a session revoked for any other reason is reported
        as revoked; a bare version mismatch is a concurrent rotation of the
        same token and is terminal without being treated as an attack.
        """
        current = self.sessions.find_by_id(session_id)

        if current is not None and current.is_revoked():
            if current.revoked_reason == RevokeReason.TOKEN_REUSE_DETECTED.value:
                logger.error(
                    f"Rotation of session {session_id} lost to a reuse revocation of its family"
                )
                raise SecurityError(
                    ErrorCode.TOKEN_REUSE_DETECTED,
                    "Refresh token reuse detected, all sessions of this login were revoked",
                )
            logger.info(f"Rotation of session {session_id} lost to revocation")
            raise UnauthorizedError(ErrorCode.SESSION_REVOKED, "Session has been revoked")

        actual_version = current.token_version if current is not None else None
        logger.warning(
            f"Concurrent rotation of session {session_id}: expected version "
            f"{expected_version}, found {actual_version}"
        )
        raise UnauthorizedError(
            ErrorCode.TOKEN_ROTATION_CONFLICT,
            "Refresh token was already rotated by a concurrent request",
            details={"session_id": session_id},
        )

    @contextmanager
    def revocation(self) -> Iterator[None]:
        """
        Run revocations as one transaction and evict their cache entries once it ends.

        Eviction must follow the commit: a request reading the row before the
        commit would re-cache the unrevoked state.
        """
        try:
            with transaction(self.db):
                yield
        finally:
            self.invalidate_revoked()

    def invalidate_revoked(self) -> None:
        """Evict cache entries of sessions revoked since the last eviction."""
        pending, self._pending_invalidations = self._pending_invalidations, set()
        self.cache.invalidate_many(pending)

    def logout(self, user_id: str, session_id: str, metadata: RequestMetadata) -> None:
        """
        Revoke the caller's session.

        Raises:
            NotFoundError: If the session does not exist or belongs to someone else
            UnauthorizedError: If the session is already revoked
        """
        session = self._get_owned_session(user_id, session_id)
        if session.is_revoked():
            raise UnauthorizedError(ErrorCode.SESSION_REVOKED, "Session has been revoked")

        self.sessions.revoke(session_id, RevokeReason.USER_LOGOUT)
        self.security_log.create(
            SecurityEvent.LOGOUT,
            user_id=user_id,
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={"session_id": session_id},
        )
        self._pending_invalidations.add(session_id)

        logger.info(f"User {user_id} logged out from session {session_id}")

    def logout_all(
        self,
        user_id: str,
        metadata: RequestMetadata,
        reason: RevokeReason = RevokeReason.USER_LOGOUT_ALL,
        exclude_session_id: str | None = None,
    ) -> int:
        """Revoke every session of a user and return how many were revoked."""
        affected = [
            sid
            for sid in self.sessions.find_unrevoked_ids(user_id=user_id)
            if sid != exclude_session_id
        ]
        revoked = self.sessions.revoke_all_by_user_id(user_id, reason, exclude_session_id)
        self.security_log.create(
            SecurityEvent.SESSION_REVOKED_ALL,
            user_id=user_id,
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={"reason": reason.value, "revoked_sessions": revoked},
        )
        self._pending_invalidations.update(affected)

        logger.info(f"User {user_id} revoked {revoked} session(s): {reason.value}")
        return revoked

    def revoke_session(self, user_id: str, session_id: str, metadata: RequestMetadata) -> None:
        """
        Revoke one of the user's own sessions.

        Raises:
            NotFoundError: If the session is absent, foreign or already revoked
        """
        session = self._get_owned_session(user_id, session_id)
        if session.is_revoked():
            raise NotFoundError(ErrorCode.SESSION_NOT_FOUND, "Session not found")

        self.sessions.revoke(session_id, RevokeReason.USER_REVOKE)
        self.security_log.create(
            SecurityEvent.SESSION_REVOKED,
            user_id=user_id,
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={"session_id": session_id},
        )
        self._pending_invalidations.add(session_id)

    def get_active_sessions(
        self, user_id: str, current_session_id: str | None = None
    ) -> list[SessionInfo]:
        return [
            SessionInfo(
                session_id=str(s.id),
                device_fingerprint=s.device_fingerprint,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
                is_current=str(s.id) == current_session_id,
            )
            for s in self.sessions.find_active_by_user_id(user_id)
        ]

    def _get_owned_session(self, user_id: str, session_id: str) -> UserSession:
        session = self.sessions.find_by_id(session_id)
        if session is None or str(session.user_id) != user_id:
            raise NotFoundError(ErrorCode.SESSION_NOT_FOUND, "Session not found")
        return session

    def validate_access_token(self, access_token: str) -> AuthenticatedPrincipal:
        """
        Authenticate a request from its access token.

        The token must verify and its session must still be live according
        to the session validity cache, which falls back to the registry on
        a miss.

        Raises:
            UnauthorizedError: If the token is invalid or expired, or the
                session is revoked, expired or unknown
        """
        try:
            payload = self.jwt_service.verify_access_token(access_token)
        except TokenExpiredException:
            raise UnauthorizedError(ErrorCode.ACCESS_TOKEN_EXPIRED, "Access token has expired")
        except InvalidTokenException:
            raise UnauthorizedError(ErrorCode.ACCESS_TOKEN_INVALID, "Invalid access token")

        session_id = str(payload["sid"])
        user_id = str(payload["sub"])
        state = self._session_state(session_id)

        if state is None or state.user_id != user_id:
            raise UnauthorizedError(ErrorCode.SESSION_NOT_FOUND, "Session not found")
        if state.revoked_at is not None:
            raise UnauthorizedError(ErrorCode.SESSION_REVOKED, "Session has been revoked")
        if state.expires_at <= utc_now():
            raise UnauthorizedError(ErrorCode.SESSION_EXPIRED, "Session has expired")

        return AuthenticatedPrincipal(
            user_id=user_id,
            email=str(payload.get("email", "")),
            session_id=session_id,
            token_family=payload.get("token_family"),
        )

    def _session_state(self, session_id: str) -> CachedSessionState | None:
        """Cache-aside read of session validity."""
        cached = self.cache.get(session_id)
        if cached is not None:
            return cached

        session = self.sessions.find_by_id(session_id)
        if session is None:
            return None

        state = CachedSessionState(
            user_id=str(session.user_id),
            expires_at=session.expires_at,
            revoked_at=session.revoked_at,
        )
        self.cache.set(session_id, state)
        return state
