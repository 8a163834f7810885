"""OAuth identity verification and the authorization code flow."""

from .authorization import (
    AuthorizationClientRegistry,
    AuthorizationCodeClient,
    ProviderEndpoints,
    build_default_authorization_clients,
    generate_pkce_pair,
)
from .key_sets import KeySet, RemoteKeySet, StaticKeySet
from .verifiers import (
    IdentityVerifier,
    OAuthVerifierRegistry,
    SignedAssertionVerifier,
    UserInfoVerifier,
    build_default_registry,
    parse_kakao_profile,
    parse_naver_profile,
)

__all__ = [
    "AuthorizationClientRegistry",
    "AuthorizationCodeClient",
    "IdentityVerifier",
    "KeySet",
    "OAuthVerifierRegistry",
    "ProviderEndpoints",
    "RemoteKeySet",
    "SignedAssertionVerifier",
    "StaticKeySet",
    "UserInfoVerifier",
    "build_default_authorization_clients",
    "build_default_registry",
    "generate_pkce_pair",
    "parse_kakao_profile",
    "parse_naver_profile",
]
