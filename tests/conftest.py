"""Global pytest configuration and fixtures."""

import time
from typing import Any
from urllib.parse import parse_qsl
from unittest.mock import Mock

import httpx
import jwt
import pytest
import redis
from cryptography.hazmat.primitives.asymmetric import rsa

from identity_core.infrastructure.auth.constants import AuthProvider, VerificationPurpose
from identity_core.infrastructure.auth.jwt_service import JWTService
from identity_core.infrastructure.auth.models import Base
from identity_core.infrastructure.auth.oauth.authorization import (
    GOOGLE_ENDPOINTS,
    KAKAO_ENDPOINTS,
    NAVER_ENDPOINTS,
    AuthorizationClientRegistry,
    AuthorizationCodeClient,
)
from identity_core.infrastructure.auth.oauth.key_sets import StaticKeySet
from identity_core.infrastructure.auth.oauth.verifiers import (
    OAuthVerifierRegistry,
    SignedAssertionVerifier,
    UserInfoVerifier,
    parse_kakao_profile,
    parse_naver_profile,
)
from identity_core.infrastructure.auth.services.auth_service import AuthService
from identity_core.infrastructure.auth.services.password_service import PasswordService
from identity_core.infrastructure.auth.types import RequestMetadata
from identity_core.infrastructure.cache.session_cache import SessionValidityCache
from identity_core.infrastructure.config import AuthConfig, DatabaseConfig
from identity_core.infrastructure.database import create_database_engine, create_session_factory

GOOGLE_CLIENT_ID = "google-client-id.apps.googleusercontent.com"
APPLE_CLIENT_ID = "com.example.identity"
PROVIDER_KEY_ID = "provider-test-key"
REDIRECT_URI = "myapp://auth/callback"
CALLBACK_URL = "https://auth.test/oauth/callback"


class CapturingEmailSender:
    """Email sender that records every code instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, VerificationPurpose]] = []
        self.fail = False

    async def send(self, address: str, code: str, purpose: VerificationPurpose) -> None:
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append((address, code, purpose))

    def last_code(self, address: str, purpose: VerificationPurpose) -> str:
        for sent_address, code, sent_purpose in reversed(self.sent):
            if sent_address == address and sent_purpose == purpose:
                return code
        raise AssertionError(f"No {purpose.value} code sent to {address}")


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite engine with the auth schema."""
    engine = create_database_engine(DatabaseConfig(url="sqlite:///:memory:"))
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine):
    """Database session for one test."""
    session = create_session_factory(engine)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def redis_client():
    """Create mock Redis client backed by a dict."""
    client = Mock(spec=redis.Redis)

    # Storage for mock Redis data
    storage: dict[str, Any] = {}

    def mock_setex(key, ttl, value):
        storage[key] = value
        return True

    def mock_get(key):
        return storage.get(key)

    def mock_delete(*keys):
        removed = 0
        for key in keys:
            if storage.pop(key, None) is not None:
                removed += 1
        return removed

    client.setex = Mock(side_effect=mock_setex)
    client.get = Mock(side_effect=mock_get)
    client.delete = Mock(side_effect=mock_delete)
    client.storage = storage
    return client


@pytest.fixture(scope="function")
def session_cache(redis_client):
    return SessionValidityCache(redis_client, ttl_seconds=30)


@pytest.fixture(scope="session")
def jwt_service():
    """JWT service with an ephemeral key pair, shared across the run."""
    return JWTService(issuer="https://auth.test", environment="test")


@pytest.fixture(scope="session")
def auth_config():
    """Auth settings with cheap Argon2 parameters."""
    return AuthConfig(
        environment="test",
        issuer="https://auth.test",
        argon2_memory_cost=1024,
        argon2_time_cost=1,
        argon2_parallelism=1,
        allowed_redirect_uris=(REDIRECT_URI,),
    )


@pytest.fixture(scope="session")
def password_service(auth_config):
    return PasswordService.from_config(auth_config)


@pytest.fixture
def email_sender():
    return CapturingEmailSender()


@pytest.fixture
def metadata():
    return RequestMetadata(ip_address="203.0.113.7", user_agent="pytest-client/1.0")


@pytest.fixture(scope="session")
def provider_private_key():
    """Signing key standing in for an identity provider's key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def sign_id_token(provider_private_key):
    """Build signed ID tokens the way GOOGLE or APPLE would."""

    def _sign(
        sub: str,
        email: str | None = None,
        email_verified: Any = True,
        provider: AuthProvider = AuthProvider.GOOGLE,
        key_id: str = PROVIDER_KEY_ID,
        **overrides: Any,
    ) -> str:
        now = int(time.time())
        if provider is AuthProvider.APPLE:
            claims: dict[str, Any] = {"iss": "https://appleid.apple.com", "aud": APPLE_CLIENT_ID}
        else:
            claims = {"iss": "https://accounts.google.com", "aud": GOOGLE_CLIENT_ID}
        claims.update({"sub": sub, "iat": now, "exp": now + 600})
        if email is not None:
            claims["email"] = email
            claims["email_verified"] = email_verified
        claims.update(overrides)
        return jwt.encode(
            claims, provider_private_key, algorithm="RS256", headers={"kid": key_id}
        )

    return _sign


@pytest.fixture
def userinfo_responses():
    """Opaque provider tokens mapped to (status, body) of the user-info endpoint."""
    return {}


@pytest.fixture
def token_responses():
    """Authorization codes mapped to (status, body) of the token endpoint."""
    return {}


@pytest.fixture
def token_requests():
    """Form bodies posted to token endpoints, in order."""
    return []


@pytest.fixture
def provider_http_client(userinfo_responses, token_responses, token_requests):
    """HTTP client serving ``userinfo_responses`` and ``token_responses``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            form = dict(parse_qsl(request.read().decode("utf-8")))
            token_requests.append(form)
            refused = (400, {"error": "invalid_grant"})
            status, body = token_responses.get(form.get("code"), refused)
            return httpx.Response(status, json=body)
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        missing = (401, {"msg": "this access token does not exist"})
        status, body = userinfo_responses.get(token, missing)
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=5.0)


@pytest.fixture
def verifiers(provider_private_key, provider_http_client):
    """Verifier registry with static keys and mocked user-info endpoints."""
    key_set = StaticKeySet({PROVIDER_KEY_ID: provider_private_key.public_key()})
    return OAuthVerifierRegistry(
        [
            SignedAssertionVerifier(
                AuthProvider.GOOGLE,
                key_set,
                ["accounts.google.com", "https://accounts.google.com"],
                GOOGLE_CLIENT_ID,
            ),
            SignedAssertionVerifier(
                AuthProvider.APPLE, key_set, ["https://appleid.apple.com"], APPLE_CLIENT_ID
            ),
            UserInfoVerifier(
                AuthProvider.KAKAO,
                "https://kapi.kakao.com/v2/user/me",
                parse_kakao_profile,
                provider_http_client,
            ),
            UserInfoVerifier(
                AuthProvider.NAVER,
                "https://openapi.naver.com/v1/nid/me",
                parse_naver_profile,
                provider_http_client,
            ),
        ]
    )


@pytest.fixture
def authorization_clients(provider_http_client):
    """Authorization code clients for GOOGLE, KAKAO and NAVER over the mocked transport."""
    return AuthorizationClientRegistry(
        [
            AuthorizationCodeClient(
                provider,
                endpoints,
                client_id,
                f"{provider.value.lower()}-secret",
                CALLBACK_URL,
                provider_http_client,
            )
            for provider, endpoints, client_id in [
                (AuthProvider.GOOGLE, GOOGLE_ENDPOINTS, GOOGLE_CLIENT_ID),
                (AuthProvider.KAKAO, KAKAO_ENDPOINTS, "kakao-client-id"),
                (AuthProvider.NAVER, NAVER_ENDPOINTS, "naver-client-id"),
            ]
        ]
    )


@pytest.fixture
def auth_service(
    db,
    jwt_service,
    session_cache,
    auth_config,
    email_sender,
    verifiers,
    password_service,
    authorization_clients,
):
    """Fully wired auth service over the in-memory database."""
    return AuthService(
        db,
        jwt_service,
        session_cache,
        config=auth_config,
        email_sender=email_sender,
        verifiers=verifiers,
        password_service=password_service,
        authorization_clients=authorization_clients,
    )


@pytest.fixture
def register_verified_user(auth_service, email_sender, metadata):
    """Register a credential user and verify the email, returning the first login."""

    async def _register(email: str = "a@x.com", password: str = "Pw1aaaaa"):
        await auth_service.register(email, password, metadata=metadata)
        code = email_sender.last_code(email, VerificationPurpose.EMAIL_VERIFY)
        return await auth_service.verify_email(email, code, metadata)

    return _register
