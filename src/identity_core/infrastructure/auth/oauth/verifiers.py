"""
OAuth identity verifiers.

Each verifier turns a provider-issued token into a ``VerifiedProfile``
built only from the provider's own response. Two shapes exist:

- Signed assertions (APPLE, GOOGLE): the ID token is verified against the
  provider's key set, issuer and audience.
- Opaque tokens (KAKAO, NAVER): the provider's user-info endpoint is
  called with the token as a bearer credential.
"""

import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol

import httpx
import jwt

from ....domain.exceptions import ErrorCode, UnauthorizedError, ValidationError
from ...config import OAuthConfig
from ..constants import AuthProvider
from ..types import VerifiedProfile
from .key_sets import KeySet, RemoteKeySet

logger = logging.getLogger(__name__)

APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUERS = ("https://appleid.apple.com",)
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
KAKAO_USER_INFO_URL = "https://kapi.kakao.com/v2/user/me"
NAVER_USER_INFO_URL = "https://openapi.naver.com/v1/nid/me"


class IdentityVerifier(Protocol):
    """Verifies a provider token and returns the provider-attested profile."""

    provider: AuthProvider

    async def verify(self, token: str) -> VerifiedProfile: ...


def _invalid_token(provider: AuthProvider, reason: str) -> UnauthorizedError:
    logger.info(f"{provider.value} token rejected: {reason}")
    return UnauthorizedError(
        ErrorCode.OAUTH_TOKEN_INVALID, f"Invalid or expired {provider.value} token"
    )


def _unavailable(provider: AuthProvider, error: Exception) -> UnauthorizedError:
    logger.error(f"{provider.value} identity provider unreachable: {error}")
    return UnauthorizedError(
        ErrorCode.OAUTH_PROVIDER_UNAVAILABLE, f"{provider.value} is temporarily unavailable"
    )


class SignedAssertionVerifier:
    """Verifies RS256 ID tokens against a provider key set."""

    algorithms = ["RS256"]

    def __init__(
        self,
        provider: AuthProvider,
        key_set: KeySet,
        issuers: Iterable[str],
        audience: str,
    ):
        self.provider = provider
        self.key_set = key_set
        self.issuers = frozenset(issuers)
        self.audience = audience

    async def verify(self, token: str) -> VerifiedProfile:
        """
        Verify an ID token.

        Args:
            token: Provider-issued ID token

        Returns:
            Profile built from the verified claims

        Raises:
            UnauthorizedError: If the token is malformed, unsigned by the
                provider, expired, or issued for another audience or issuer
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise _invalid_token(self.provider, f"malformed header: {e}")

        key = await self.key_set.get_key(header.get("kid"))

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"require": ["exp", "iat", "iss", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise _invalid_token(self.provider, "expired")
        except jwt.InvalidTokenError as e:
            raise _invalid_token(self.provider, str(e))

        if claims["iss"] not in self.issuers:
            raise _invalid_token(self.provider, f"unexpected issuer {claims['iss']}")

        # APPLE sends the flag as a string
        email_verified = claims.get("email_verified") in (True, "true")
        return VerifiedProfile(
            id=str(claims["sub"]),
            email=claims.get("email"),
            email_verified=email_verified,
            name=claims.get("name"),
            picture=claims.get("picture"),
            raw_claims=dict(claims),
        )


ProfileParser = Callable[[dict[str, Any]], VerifiedProfile]


def parse_kakao_profile(data: dict[str, Any]) -> VerifiedProfile:
    """Build a profile from a Kakao ``/v2/user/me`` response."""
    account = data.get("kakao_account") or {}
    profile = account.get("profile") or {}
    return VerifiedProfile(
        id=str(data["id"]),
        email=account.get("email"),
        email_verified=bool(account.get("is_email_verified", False)),
        name=profile.get("nickname"),
        picture=profile.get("profile_image_url"),
        raw_claims=data,
    )


def parse_naver_profile(data: dict[str, Any]) -> VerifiedProfile:
    """Build a profile from a Naver ``/v1/nid/me`` response."""
    if data.get("resultcode") != "00":
        raise ValueError(f"resultcode {data.get('resultcode')}: {data.get('message')}")

    response = data["response"]
    email = response.get("email")
    return VerifiedProfile(
        id=str(response["id"]),
        email=email,
        # Naver only returns addresses it has confirmed
        email_verified=bool(email),
        name=response.get("name") or response.get("nickname"),
        picture=response.get("profile_image"),
        raw_claims=data,
    )


class UserInfoVerifier:
    """Verifies opaque access tokens by calling the provider's user-info endpoint."""

    def __init__(
        self,
        provider: AuthProvider,
        endpoint: str,
        parser: ProfileParser,
        http_client: httpx.AsyncClient,
    ):
        self.provider = provider
        self.endpoint = endpoint
        self.parser = parser
        self.http_client = http_client

    async def verify(self, token: str) -> VerifiedProfile:
        """
        Verify an access token.

        Raises:
            UnauthorizedError: OAUTH_TOKEN_INVALID on any non-2xx or
                unparseable response, OAUTH_PROVIDER_UNAVAILABLE on timeouts
                and transport errors
        """
        try:
            response = await self.http_client.get(
                self.endpoint, headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.HTTPError as e:
            raise _unavailable(self.provider, e)

        if not response.is_success:
            raise _invalid_token(self.provider, f"user info returned {response.status_code}")

        try:
            return self.parser(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise _invalid_token(self.provider, f"unparseable user info: {e}")


class OAuthVerifierRegistry:
    """Selects the verifier for a provider."""

    def __init__(self, verifiers: Iterable[IdentityVerifier] = ()):
        self._verifiers: dict[AuthProvider, IdentityVerifier] = {}
        for verifier in verifiers:
            self.register(verifier)

    def register(self, verifier: IdentityVerifier) -> None:
        self._verifiers[verifier.provider] = verifier

    def get(self, provider: AuthProvider) -> IdentityVerifier:
        """
        Raises:
            ValidationError: If no verifier is configured for the provider
        """
        verifier = self._verifiers.get(provider)
        if verifier is None:
            raise ValidationError(
                ErrorCode.UNSUPPORTED_PROVIDER, f"Unsupported provider: {provider.value}"
            )
        return verifier

    @property
    def providers(self) -> list[AuthProvider]:
        return list(self._verifiers)


def build_default_registry(
    config: OAuthConfig, http_client: httpx.AsyncClient
) -> OAuthVerifierRegistry:
    """
    Build verifiers for every provider.

    Signed-assertion providers are only registered when their client id is
    configured, since the client id is the expected audience.
    """
    registry = OAuthVerifierRegistry(
        [
            UserInfoVerifier(
                AuthProvider.KAKAO, KAKAO_USER_INFO_URL, parse_kakao_profile, http_client
            ),
            UserInfoVerifier(
                AuthProvider.NAVER, NAVER_USER_INFO_URL, parse_naver_profile, http_client
            ),
        ]
    )

    signed = [
        (AuthProvider.APPLE, config.apple_client_id, APPLE_JWKS_URL, APPLE_ISSUERS),
        (AuthProvider.GOOGLE, config.google_client_id, GOOGLE_JWKS_URL, GOOGLE_ISSUERS),
    ]
    for provider, client_id, jwks_url, issuers in signed:
        if not client_id:
            logger.warning(f"{provider.value} client id not configured, provider disabled")
            continue
        key_set = RemoteKeySet(
            jwks_url,
            http_client,
            cache_ttl_seconds=config.jwks_cache_seconds,
            min_refresh_interval_seconds=config.jwks_min_refresh_interval_seconds,
        )
        registry.register(SignedAssertionVerifier(provider, key_set, issuers, client_id))

    return registry
