"""
Authorization code flow against identity providers.

Builds the consent-page URL a browser is sent to and trades the code the
provider hands back for the token its verifier accepts: an ID token for
signed-assertion providers, an access token for opaque-token providers.
"""

import base64
import hashlib
import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ....domain.exceptions import ErrorCode, UnauthorizedError, ValidationError
from ...config import OAuthConfig
from ..constants import AuthProvider

logger = logging.getLogger(__name__)

PKCE_VERIFIER_BYTES = 64


@dataclass(frozen=True)
class ProviderEndpoints:
    """Where a provider's consent page and token endpoint live."""

    authorize_url: str
    token_url: str
    token_field: str
    scope: str | None = None
    supports_pkce: bool = False
    extra_params: dict[str, str] = field(default_factory=dict)


APPLE_ENDPOINTS = ProviderEndpoints(
    authorize_url="https://appleid.apple.com/auth/authorize",
    token_url="https://appleid.apple.com/auth/token",
    token_field="id_token",
    scope="name email",
    # Apple only posts the callback when name or email scopes are requested
    extra_params={"response_mode": "form_post"},
)
GOOGLE_ENDPOINTS = ProviderEndpoints(
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    token_field="id_token",
    scope="openid email profile",
    supports_pkce=True,
)
KAKAO_ENDPOINTS = ProviderEndpoints(
    authorize_url="https://kauth.kakao.com/oauth/authorize",
    token_url="https://kauth.kakao.com/oauth/token",
    token_field="access_token",
    scope="profile_nickname profile_image account_email",
)
NAVER_ENDPOINTS = ProviderEndpoints(
    authorize_url="https://nid.naver.com/oauth2.0/authorize",
    token_url="https://nid.naver.com/oauth2.0/token",
    token_field="access_token",
)


def generate_pkce_pair() -> tuple[str, str]:
    """Return a PKCE code verifier and its S256 challenge."""
    verifier = secrets.token_urlsafe(PKCE_VERIFIER_BYTES)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def _exchange_rejected(provider: AuthProvider, reason: str) -> UnauthorizedError:
    logger.info(f"{provider.value} authorization code rejected: {reason}")
    return UnauthorizedError(
        ErrorCode.OAUTH_TOKEN_INVALID, f"Invalid or expired {provider.value} authorization code"
    )


class AuthorizationCodeClient:
    """One provider's side of the authorization code flow."""

    def __init__(
        self,
        provider: AuthProvider,
        endpoints: ProviderEndpoints,
        client_id: str,
        client_secret: str,
        callback_url: str,
        http_client: httpx.AsyncClient,
    ):
        self.provider = provider
        self.endpoints = endpoints
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.http_client = http_client

    @property
    def supports_pkce(self) -> bool:
        return self.endpoints.supports_pkce

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        """Consent-page URL that sends the browser back to our callback with ``state``."""
        params: dict[str, Any] = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "state": state,
        }
        if self.endpoints.scope:
            params["scope"] = self.endpoints.scope
        if code_challenge is not None:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(self.endpoints.extra_params)
        return str(httpx.URL(self.endpoints.authorize_url, params=params))

    async def exchange(self, code: str, code_verifier: str | None = None) -> str:
        """
        Trade an authorization code for the provider token.

        Args:
            code: Code from the provider callback
            code_verifier: PKCE verifier stored when the login started

        Returns:
            The token named by ``token_field``, ready for the provider's verifier

        Raises:
            UnauthorizedError: OAUTH_TOKEN_INVALID if the provider refuses the
                code, OAUTH_PROVIDER_UNAVAILABLE on timeouts and transport errors
        """
        form = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.callback_url,
            "code": code,
        }
        if code_verifier is not None:
            form["code_verifier"] = code_verifier

        try:
            response = await self.http_client.post(self.endpoints.token_url, data=form)
        except httpx.HTTPError as e:
            logger.error(f"{self.provider.value} token endpoint unreachable: {e}")
            raise UnauthorizedError(
                ErrorCode.OAUTH_PROVIDER_UNAVAILABLE,
                f"{self.provider.value} is temporarily unavailable",
            )

        if not response.is_success:
            raise _exchange_rejected(
                self.provider, f"token endpoint returned {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise _exchange_rejected(self.provider, f"unparseable token response: {e}")

        # Naver reports failures with a 200 and an error field
        token = data.get(self.endpoints.token_field) if isinstance(data, dict) else None
        if not token:
            error = data.get("error") if isinstance(data, dict) else None
            raise _exchange_rejected(
                self.provider, f"no {self.endpoints.token_field} in response ({error})"
            )
        return str(token)


class AuthorizationClientRegistry:
    """Selects the authorization code client for a provider."""

    def __init__(self, clients: Iterable[AuthorizationCodeClient] = ()):
        self._clients = {client.provider: client for client in clients}

    def get(self, provider: AuthProvider) -> AuthorizationCodeClient:
        """
        Raises:
            ValidationError: If browser logins are not configured for the provider
        """
        client = self._clients.get(provider)
        if client is None:
            raise ValidationError(
                ErrorCode.UNSUPPORTED_PROVIDER,
                f"Browser login is not available for {provider.value}",
            )
        return client

    @property
    def providers(self) -> list[AuthProvider]:
        return list(self._clients)


def build_default_authorization_clients(
    config: OAuthConfig, http_client: httpx.AsyncClient
) -> AuthorizationClientRegistry:
    """
    Build clients for every provider whose credentials and callback are configured.
    """
    candidates = [
        (AuthProvider.APPLE, APPLE_ENDPOINTS, config.apple_client_id, config.apple_client_secret),
        (
            AuthProvider.GOOGLE,
            GOOGLE_ENDPOINTS,
            config.google_client_id,
            config.google_client_secret,
        ),
        (AuthProvider.KAKAO, KAKAO_ENDPOINTS, config.kakao_client_id, config.kakao_client_secret),
        (AuthProvider.NAVER, NAVER_ENDPOINTS, config.naver_client_id, config.naver_client_secret),
    ]

    clients = []
    for provider, endpoints, client_id, client_secret in candidates:
        callback_url = config.callback_url_for(provider.value)
        if not (client_id and client_secret and callback_url):
            logger.debug(f"{provider.value} browser login not configured")
            continue
        clients.append(
            AuthorizationCodeClient(
                provider, endpoints, client_id, client_secret, callback_url, http_client
            )
        )

    return AuthorizationClientRegistry(clients)
