"""
Tests for the auth repositories: session registry compare-and-swap,
login attempt counting, the security event log and pending
browser-redirect logins.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from identity_core.infrastructure.auth.constants import (
    AuthProvider,
    LoginFailureReason,
    RevokeReason,
    SecurityEvent,
    UserStatus,
)
from identity_core.infrastructure.auth.models import LoginAttempt, SecurityLogEntry
from identity_core.infrastructure.auth.repositories import (
    AccountRepository,
    LoginAttemptRepository,
    OAuthStateRepository,
    SecurityLogRepository,
    SessionRepository,
    UserRepository,
)
from identity_core.infrastructure.time import utc_now


@pytest.fixture
def user(db):
    user = UserRepository(db).create("a@x.com", UserStatus.ACTIVE, email_verified=True)
    db.commit()
    return user


class TestSessionRepository:
    """Test the session registry."""

    @pytest.fixture
    def sessions(self, db):
        return SessionRepository(db)

    @pytest.fixture
    def session(self, sessions, user):
        return sessions.create(
            user_id=str(user.id),
            token_family="family-1",
            expires_at=utc_now() + timedelta(days=7),
            refresh_token_hash="hash-1",
            ip_address="203.0.113.7",
        )

    def test_create_starts_at_version_one(self, session):
        assert session.token_version == 1
        assert session.previous_token_hash is None
        assert session.is_active()

    def test_create_without_hash_uses_unique_placeholder(self, sessions, user):
        expires_at = utc_now() + timedelta(days=7)
        first = sessions.create(str(user.id), "family-a", expires_at)
        second = sessions.create(str(user.id), "family-b", expires_at)

        assert first.refresh_token_hash.startswith("pending_")
        assert first.refresh_token_hash != second.refresh_token_hash

        sessions.update_refresh_token_hash(str(first.id), "real-hash")
        assert sessions.find_by_refresh_token_hash("real-hash").id == first.id

    def test_rotate_token(self, sessions, session):
        rotated = sessions.rotate_token(
            str(session.id),
            refresh_token_hash="hash-2",
            token_version=2,
            previous_token_hash="hash-1",
            expected_token_version=1,
        )

        assert rotated is not None
        assert rotated.token_version == 2
        assert rotated.refresh_token_hash == "hash-2"
        assert rotated.previous_token_hash == "hash-1"
        assert sessions.find_by_previous_token_hash("hash-1").id == session.id
        assert sessions.find_by_refresh_token_hash("hash-1") is None

    def test_rotate_token_with_stale_version_matches_nothing(self, sessions, session):
        """Only one of two writers that read the same version can win."""
        first = sessions.rotate_token(str(session.id), "hash-2a", 2, "hash-1", 1)
        second = sessions.rotate_token(str(session.id), "hash-2b", 2, "hash-1", 1)

        assert first is not None
        assert second is None
        assert sessions.find_by_id(str(session.id)).refresh_token_hash == "hash-2a"

    def test_rotate_revoked_session_matches_nothing(self, sessions, session):
        sessions.revoke(str(session.id), RevokeReason.USER_LOGOUT)

        assert sessions.rotate_token(str(session.id), "hash-2", 2, "hash-1", 1) is None

    def test_revoke_keeps_original_reason(self, sessions, session):
        assert sessions.revoke(str(session.id), RevokeReason.USER_LOGOUT) is True
        assert sessions.revoke(str(session.id), RevokeReason.TOKEN_REUSE_DETECTED) is False

        reloaded = sessions.find_by_id(str(session.id))
        assert reloaded.is_revoked()
        assert reloaded.revoked_reason == RevokeReason.USER_LOGOUT.value

    def test_revoke_by_token_family(self, sessions, session, user):
        other = sessions.create(
            str(user.id), "family-2", utc_now() + timedelta(days=7), refresh_token_hash="other"
        )

        assert sessions.revoke_by_token_family("family-1", RevokeReason.TOKEN_REUSE_DETECTED) == 1
        assert sessions.find_by_id(str(session.id)).is_revoked()
        assert not sessions.find_by_id(str(other.id)).is_revoked()
        assert sessions.find_by_token_family("family-1") is None

    def test_revoke_all_by_user_id_with_exclusion(self, sessions, session, user):
        kept = sessions.create(
            str(user.id), "family-2", utc_now() + timedelta(days=7), refresh_token_hash="kept"
        )

        revoked = sessions.revoke_all_by_user_id(
            str(user.id), RevokeReason.USER_LOGOUT_ALL, exclude_session_id=str(kept.id)
        )

        assert revoked == 1
        assert sessions.find_unrevoked_ids(user_id=str(user.id)) == [str(kept.id)]

    def test_find_active_excludes_revoked_and_expired(self, db, sessions, session, user):
        expired = sessions.create(
            str(user.id), "family-2", utc_now() - timedelta(seconds=1), refresh_token_hash="old"
        )
        revoked = sessions.create(
            str(user.id), "family-3", utc_now() + timedelta(days=7), refresh_token_hash="gone"
        )
        sessions.revoke(str(revoked.id), RevokeReason.USER_REVOKE)

        active = sessions.find_active_by_user_id(str(user.id))

        assert [s.id for s in active] == [session.id]
        assert expired.is_expired()

    def test_delete_expired_removes_expired_and_revoked(self, sessions, session, user):
        sessions.create(
            str(user.id), "family-2", utc_now() - timedelta(seconds=1), refresh_token_hash="old"
        )
        revoked = sessions.create(
            str(user.id), "family-3", utc_now() + timedelta(days=7), refresh_token_hash="gone"
        )
        sessions.revoke(str(revoked.id), RevokeReason.USER_REVOKE)

        assert sessions.delete_expired() == 2
        assert sessions.find_unrevoked_ids(user_id=str(user.id)) == [str(session.id)]


class TestUserRepository:
    """Test users and provider accounts."""

    def test_email_is_normalized(self, db, user):
        users = UserRepository(db)
        assert users.find_by_email("  A@X.COM ").id == user.id
        assert users.exists_by_email("a@x.com")
        assert not users.exists_by_email("b@x.com")

    def test_create_adds_profile_and_consent(self, db):
        user = UserRepository(db).create(
            "b@x.com",
            UserStatus.PENDING_VERIFY,
            name="Bee",
            terms_agreed=True,
            privacy_agreed=True,
        )
        db.commit()

        assert user.profile.name == "Bee"
        assert user.consent.terms_agreed_at is not None
        assert user.consent.marketing_agreed_at is None
        assert not user.is_email_verified

    def test_mark_verified_activates_pending_user(self, db):
        user = UserRepository(db).create("b@x.com", UserStatus.PENDING_VERIFY)
        user.mark_verified()

        assert user.is_email_verified
        assert user.status == UserStatus.ACTIVE.value

    def test_accounts(self, db, user):
        accounts = AccountRepository(db)
        accounts.create_credential_account(str(user.id), "hash")
        accounts.create_oauth_account(str(user.id), AuthProvider.GOOGLE, "google-sub")

        credential = accounts.find_credential_account(str(user.id))
        assert credential.provider_account_id == str(user.id)
        assert accounts.find_by_provider(AuthProvider.GOOGLE, "google-sub").user_id == user.id
        assert accounts.count_by_user_id(str(user.id)) == 2

        accounts.delete(accounts.find_by_user_and_provider(str(user.id), AuthProvider.GOOGLE))
        assert accounts.count_by_user_id(str(user.id)) == 1


class TestLoginAttemptRepository:
    """Test the append-and-count login attempt log."""

    @pytest.fixture
    def attempts(self, db):
        return LoginAttemptRepository(db)

    def test_counts_only_lockout_reasons(self, attempts):
        since = utc_now() - timedelta(minutes=15)
        for reason in (
            LoginFailureReason.USER_NOT_FOUND,
            LoginFailureReason.INVALID_PASSWORD,
            LoginFailureReason.NO_CREDENTIAL_ACCOUNT,
            LoginFailureReason.EMAIL_NOT_VERIFIED,
            LoginFailureReason.ACCOUNT_LOCKED,
        ):
            attempts.create("a@x.com", AuthProvider.CREDENTIAL, False, reason)
        attempts.create("a@x.com", AuthProvider.CREDENTIAL, True)

        assert attempts.count_recent_failures_by_email("a@x.com", since) == 3

    def test_counts_within_window(self, db, attempts):
        attempts.create(
            "a@x.com", AuthProvider.CREDENTIAL, False, LoginFailureReason.INVALID_PASSWORD
        )
        old = attempts.create(
            "a@x.com", AuthProvider.CREDENTIAL, False, LoginFailureReason.INVALID_PASSWORD
        )
        db.execute(
            update(LoginAttempt)
            .where(LoginAttempt.id == old.id)
            .values(created_at=utc_now() - timedelta(minutes=30))
        )

        assert attempts.count_recent_failures_by_email(
            "a@x.com", utc_now() - timedelta(minutes=15)
        ) == 1

    def test_counts_by_ip(self, attempts):
        since = utc_now() - timedelta(minutes=15)
        attempts.create(
            "a@x.com",
            AuthProvider.CREDENTIAL,
            False,
            LoginFailureReason.INVALID_PASSWORD,
            ip_address="203.0.113.7",
        )
        attempts.create(
            None,
            AuthProvider.KAKAO,
            False,
            LoginFailureReason.OAUTH_TOKEN_INVALID,
            ip_address="203.0.113.7",
        )

        assert attempts.count_recent_failures_by_ip("203.0.113.7", since) == 2
        assert attempts.count_recent_failures_by_ip("198.51.100.1", since) == 0

    def test_delete_older_than(self, db, attempts):
        attempt = attempts.create("a@x.com", AuthProvider.CREDENTIAL, True)
        db.execute(
            update(LoginAttempt)
            .where(LoginAttempt.id == attempt.id)
            .values(created_at=utc_now() - timedelta(days=40))
        )
        attempts.create("a@x.com", AuthProvider.CREDENTIAL, True)

        assert attempts.delete_older_than(utc_now() - timedelta(days=30)) == 1
        assert len(attempts.find_recent_by_email("a@x.com")) == 1


class TestSecurityLogRepository:
    """Test the append-only security event log."""

    @pytest.fixture
    def security_log(self, db):
        return SecurityLogRepository(db)

    def test_create_and_query(self, security_log, user):
        security_log.create(
            SecurityEvent.LOGIN_SUCCESS,
            user_id=str(user.id),
            ip_address="203.0.113.7",
            metadata={"session_id": "s-1"},
        )
        security_log.create(SecurityEvent.LOGOUT, user_id=str(user.id), ip_address="203.0.113.7")

        entries = security_log.find_by_user(str(user.id))
        assert {e.event for e in entries} == {"LOGIN_SUCCESS", "LOGOUT"}
        assert len(security_log.find_by_ip("203.0.113.7")) == 2

        login = next(e for e in entries if e.event == "LOGIN_SUCCESS")
        assert login.details == {"session_id": "s-1"}

    def test_time_window_and_counts(self, security_log):
        start = utc_now() - timedelta(minutes=1)
        security_log.create(SecurityEvent.SUSPICIOUS_ACTIVITY, metadata={"reason": "test"})
        security_log.create(SecurityEvent.LOGOUT)
        end = utc_now() + timedelta(minutes=1)

        window = security_log.find_by_time_window(start, end, SecurityEvent.SUSPICIOUS_ACTIVITY)
        assert len(window) == 1
        assert security_log.count_by_event(SecurityEvent.LOGOUT, start) == 1

    def test_suspicious_activity_logged_as_warning(self, security_log, caplog):
        with caplog.at_level("WARNING"):
            security_log.create(SecurityEvent.SUSPICIOUS_ACTIVITY, metadata={"reason": "reuse"})

        assert "SUSPICIOUS_ACTIVITY" in caplog.text

    def test_retention_delete(self, db, security_log):
        entry = security_log.create(SecurityEvent.LOGOUT)
        db.execute(
            update(SecurityLogEntry)
            .where(SecurityLogEntry.id == entry.id)
            .values(created_at=utc_now() - timedelta(days=100))
        )
        security_log.create(SecurityEvent.LOGOUT)

        assert security_log.delete_older_than(utc_now() - timedelta(days=90)) == 1


class TestOAuthStateRepository:
    """Test single-use browser-redirect states."""

    @pytest.fixture
    def states(self, db):
        return OAuthStateRepository(db)

    def test_consume_once(self, db, states):
        states.create(
            "state-1", AuthProvider.GOOGLE, "myapp://cb", utc_now() + timedelta(minutes=10), "v"
        )
        db.commit()

        record = states.consume("state-1", AuthProvider.GOOGLE)
        assert record.redirect_uri == "myapp://cb"
        assert record.code_verifier == "v"
        assert states.consume("state-1", AuthProvider.GOOGLE) is None

    def test_consume_requires_matching_provider(self, db, states):
        states.create("state-1", AuthProvider.NAVER, "myapp://cb", utc_now() + timedelta(minutes=1))

        assert states.consume("state-1", AuthProvider.KAKAO) is None
        assert states.consume("state-1", AuthProvider.NAVER) is not None

    def test_expired_state_is_not_consumed(self, states):
        states.create("old", AuthProvider.GOOGLE, "myapp://cb", utc_now() - timedelta(seconds=1))

        assert states.consume("old", AuthProvider.GOOGLE) is None

    def test_only_the_hash_is_stored(self, states):
        record = states.create("secret-state", AuthProvider.GOOGLE, "myapp://cb", utc_now())

        assert record.state_hash == OAuthStateRepository.hash_state("secret-state")
        assert "secret-state" not in record.state_hash

    def test_delete_expired(self, db, states):
        states.create("live", AuthProvider.GOOGLE, "myapp://cb", utc_now() + timedelta(minutes=5))
        states.create("spent", AuthProvider.GOOGLE, "myapp://cb", utc_now() + timedelta(minutes=5))
        states.create("old", AuthProvider.GOOGLE, "myapp://cb", utc_now() - timedelta(minutes=1))
        states.consume("spent", AuthProvider.GOOGLE)

        assert states.delete_expired() == 2
        assert states.consume("live", AuthProvider.GOOGLE) is not None
