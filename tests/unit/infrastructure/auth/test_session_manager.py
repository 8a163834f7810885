"""
Tests for the session manager: issuance, per-request validation through the
session validity cache, and revocation.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from identity_core.domain.exceptions import ErrorCode, NotFoundError, UnauthorizedError
from identity_core.infrastructure.auth.constants import RevokeReason, UserStatus
from identity_core.infrastructure.auth.models import UserSession
from identity_core.infrastructure.auth.repositories.user_repository import UserRepository
from identity_core.infrastructure.auth.services.session_manager import SessionManager
from identity_core.infrastructure.auth.types import RequestMetadata
from identity_core.infrastructure.cache.session_cache import (
    CachedSessionState,
    InMemoryCache,
    SessionValidityCache,
)
from identity_core.infrastructure.time import utc_now


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSessionManager:
    """Test session lifecycle outside of the facade."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return SessionValidityCache(InMemoryCache(clock=clock), ttl_seconds=30)

    @pytest.fixture
    def manager(self, db, jwt_service, cache):
        return SessionManager(db, jwt_service, cache)

    @pytest.fixture
    def user(self, db):
        user = UserRepository(db).create("a@x.com", UserStatus.ACTIVE, email_verified=True)
        db.commit()
        return user

    @pytest.fixture
    def result(self, db, manager, user, metadata):
        result = manager.create_session(user, metadata)
        db.commit()
        return result

    def test_create_session_binds_tokens(self, db, manager, jwt_service, result, user):
        session = manager.sessions.find_by_id(result.session_id)

        assert session.user_id == user.id
        assert session.token_version == 1
        assert session.refresh_token_hash == jwt_service.hash_refresh_token(result.refresh_token)
        assert session.ip_address == "203.0.113.7"
        assert session.device_fingerprint == "pytest-client/1.0"

        payload = jwt_service.verify_refresh_token(result.refresh_token)
        assert payload["sid"] == result.session_id
        assert payload["token_family"] == session.token_family

    def test_unparseable_ip_is_stored_as_none(self, db, manager, user):
        result = manager.create_session(user, RequestMetadata(ip_address="not-an-ip"))
        assert manager.sessions.find_by_id(result.session_id).ip_address is None

    def test_validate_access_token(self, manager, result, user):
        principal = manager.validate_access_token(result.access_token)

        assert principal.user_id == str(user.id)
        assert principal.session_id == result.session_id
        assert principal.email == "a@x.com"

    def test_validate_rejects_garbage(self, manager):
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token("garbage")
        assert exc_info.value.code == ErrorCode.ACCESS_TOKEN_INVALID

    def test_validate_rejects_refresh_token(self, manager, result):
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token(result.refresh_token)
        assert exc_info.value.code == ErrorCode.ACCESS_TOKEN_INVALID

    def test_logout_invalidates_cache_immediately(self, db, manager, result, user, metadata):
        manager.validate_access_token(result.access_token)

        with manager.revocation():
            manager.logout(str(user.id), result.session_id, metadata)

        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token(result.access_token)
        assert exc_info.value.code == ErrorCode.SESSION_REVOKED

    def test_cache_evicted_after_commit(self, db, manager, cache, result, user, metadata):
        """A state cached while the revocation is still uncommitted does not survive it."""
        manager.validate_access_token(result.access_token)

        with manager.revocation():
            manager.logout(str(user.id), result.session_id, metadata)
            assert cache.get(result.session_id).revoked_at is None
            # Another request re-caches the committed, unrevoked row
            cache.set(
                result.session_id,
                CachedSessionState(user_id=str(user.id), expires_at=utc_now() + timedelta(days=1)),
            )

        assert cache.get(result.session_id) is None
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token(result.access_token)
        assert exc_info.value.code == ErrorCode.SESSION_REVOKED

    def test_cache_evicted_after_rollback(self, manager, cache, result, user, metadata):
        manager.validate_access_token(result.access_token)

        with pytest.raises(RuntimeError):
            with manager.revocation():
                manager.logout(str(user.id), result.session_id, metadata)
                raise RuntimeError("boom")

        assert cache.get(result.session_id) is None
        assert manager.validate_access_token(result.access_token).session_id == result.session_id

    def test_revocation_without_invalidation_is_bounded_by_ttl(self, db, manager, clock, result):
        """A cached entry may outlive a revocation by at most the cache TTL."""
        manager.validate_access_token(result.access_token)
        manager.sessions.revoke(result.session_id, RevokeReason.USER_REVOKE)
        db.commit()

        clock.now += 29
        manager.validate_access_token(result.access_token)

        clock.now += 2
        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token(result.access_token)
        assert exc_info.value.code == ErrorCode.SESSION_REVOKED

    def test_expired_session_rejected(self, db, manager, result):
        db.execute(
            update(UserSession)
            .where(UserSession.id == result.session_id)
            .values(expires_at=utc_now() - timedelta(seconds=1))
        )
        db.commit()

        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token(result.access_token)
        assert exc_info.value.code == ErrorCode.SESSION_EXPIRED

    def test_unknown_session_rejected(self, manager, jwt_service, user):
        pair = jwt_service.generate_token_pair(str(user.id), "a@x.com", "missing", "family", 1)

        with pytest.raises(UnauthorizedError) as exc_info:
            manager.validate_access_token(pair.access_token)
        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

    def test_logout_twice(self, db, manager, result, user, metadata):
        manager.logout(str(user.id), result.session_id, metadata)

        with pytest.raises(UnauthorizedError) as exc_info:
            manager.logout(str(user.id), result.session_id, metadata)
        assert exc_info.value.code == ErrorCode.SESSION_REVOKED

    def test_cannot_touch_foreign_session(self, db, manager, result, metadata):
        other = UserRepository(db).create("b@x.com", UserStatus.ACTIVE, email_verified=True)

        with pytest.raises(NotFoundError):
            manager.logout(str(other.id), result.session_id, metadata)
        with pytest.raises(NotFoundError):
            manager.revoke_session(str(other.id), result.session_id, metadata)

    def test_revoke_session_twice_is_not_found(self, manager, result, user, metadata):
        manager.revoke_session(str(user.id), result.session_id, metadata)

        with pytest.raises(NotFoundError) as exc_info:
            manager.revoke_session(str(user.id), result.session_id, metadata)
        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND

    def test_logout_all_except_current(self, db, manager, result, user, metadata):
        second = manager.create_session(user, metadata)
        third = manager.create_session(user, metadata)

        revoked = manager.logout_all(str(user.id), metadata, exclude_session_id=second.session_id)

        assert revoked == 2
        active = manager.get_active_sessions(str(user.id), current_session_id=second.session_id)
        assert [s.session_id for s in active] == [second.session_id]
        assert active[0].is_current
        with pytest.raises(UnauthorizedError):
            manager.validate_access_token(third.access_token)

    def test_get_active_sessions(self, manager, result, user, metadata):
        second = manager.create_session(user, metadata)

        sessions = manager.get_active_sessions(str(user.id), current_session_id=result.session_id)

        assert {s.session_id for s in sessions} == {result.session_id, second.session_id}
        current = [s for s in sessions if s.is_current]
        assert [s.session_id for s in current] == [result.session_id]
        assert all(s.user_agent == "pytest-client/1.0" for s in sessions)
