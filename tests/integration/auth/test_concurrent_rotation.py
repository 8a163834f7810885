"""
Integration tests for refresh rotation racing across separate connections.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from identity_core.domain.exceptions import ErrorCode, UnauthorizedError
from identity_core.infrastructure.auth.constants import VerificationPurpose
from identity_core.infrastructure.auth.models import Base, UserSession
from identity_core.infrastructure.auth.services.auth_service import AuthService
from identity_core.infrastructure.config import DatabaseConfig
from identity_core.infrastructure.database import create_database_engine, create_session_factory

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


@pytest.fixture
def file_engine(tmp_path):
    """SQLite engine over a file so that each session gets its own connection."""
    engine = create_database_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'auth.db'}"))
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def two_services(
    file_engine, jwt_service, session_cache, auth_config, email_sender, verifiers, password_service
):
    """Two auth services that share everything but their database session."""
    factory = create_session_factory(file_engine)
    sessions = [factory(), factory()]
    services = [
        AuthService(
            session,
            jwt_service,
            session_cache,
            config=auth_config,
            email_sender=email_sender,
            verifiers=verifiers,
            password_service=password_service,
        )
        for session in sessions
    ]
    yield services
    for session in sessions:
        session.rollback()
        session.close()


class TestConcurrentRotation:
    """Test two requests rotating the same refresh token over separate connections."""

    async def test_slower_request_gets_conflict(
        self, two_services, email_sender, metadata, jwt_service, monkeypatch
    ):
        first, second = two_services
        await first.register("a@x.com", "Pw1aaaaa", metadata=metadata)
        code = email_sender.last_code("a@x.com", VerificationPurpose.EMAIL_VERIFY)
        login = await first.verify_email("a@x.com", code, metadata)

        sessions = second.session_manager.sessions
        original = sessions.rotate_token
        observed = {}

        def rotate_after_competitor(*args, **kwargs):
            # The second request has already read the session; let the first
            # one finish its whole rotation on its own connection before we swap
            with ThreadPoolExecutor(max_workers=1) as pool:
                observed["winner"] = pool.submit(
                    asyncio.run, first.refresh_tokens(login.refresh_token, metadata)
                ).result()
            observed["swapped"] = original(*args, **kwargs)
            return observed["swapped"]

        monkeypatch.setattr(sessions, "rotate_token", rotate_after_competitor)

        with pytest.raises(UnauthorizedError) as exc_info:
            await second.refresh_tokens(login.refresh_token, metadata)

        assert exc_info.value.code == ErrorCode.TOKEN_ROTATION_CONFLICT
        assert observed["swapped"] is None

        winner = observed["winner"]
        stored = first.db.get(UserSession, login.session_id, populate_existing=True)
        assert not stored.is_revoked()
        assert stored.token_version == 2
        assert stored.refresh_token_hash == jwt_service.hash_refresh_token(winner.refresh_token)

        # The winning request's tokens stay usable
        assert first.validate_access_token(winner.access_token).session_id == login.session_id
        monkeypatch.undo()
        rotated = await second.refresh_tokens(winner.refresh_token, metadata)
        assert rotated.session_id == login.session_id

    async def test_sequential_requests_both_succeed(self, two_services, email_sender, metadata):
        first, second = two_services
        await first.register("a@x.com", "Pw1aaaaa", metadata=metadata)
        code = email_sender.last_code("a@x.com", VerificationPurpose.EMAIL_VERIFY)
        login = await first.verify_email("a@x.com", code, metadata)

        rotated = await first.refresh_tokens(login.refresh_token, metadata)
        again = await second.refresh_tokens(rotated.refresh_token, metadata)

        assert again.session_id == login.session_id
        stored = second.db.get(UserSession, login.session_id, populate_existing=True)
        assert stored.token_version == 3
