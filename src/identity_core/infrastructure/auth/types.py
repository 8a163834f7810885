"""
Shared authentication types.

Request metadata and the typed success payloads returned by the auth
operations.
"""

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime

from .constants import DEVICE_FINGERPRINT_MAX_LENGTH, AuthProvider


@dataclass(frozen=True)
class RequestMetadata:
    """Client context used for session attribution and audit logging."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_name: str | None = None

    @property
    def normalized_ip(self) -> str | None:
        """The IP address if it parses, otherwise None."""
        if not self.ip_address:
            return None
        try:
            return str(ipaddress.ip_address(self.ip_address.strip()))
        except ValueError:
            return None

    @property
    def device_fingerprint(self) -> str:
        source = self.device_name or self.user_agent or "unknown"
        return source[:DEVICE_FINGERPRINT_MAX_LENGTH]


@dataclass(frozen=True)
class TokenPair:
    """Signed access and refresh tokens."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class AuthResult:
    """Authentication result data."""

    user_id: str
    session_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    is_new_user: bool = False

    @classmethod
    def from_pair(
        cls, user_id: str, session_id: str, pair: TokenPair, is_new_user: bool = False
    ) -> "AuthResult":
        return cls(
            user_id=user_id,
            session_id=session_id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            token_type=pair.token_type,
            is_new_user=is_new_user,
        )


@dataclass
class RegistrationResult:
    """User registration result."""

    user_id: str
    email: str
    email_verification_required: bool = True
    message: str = "Verification code sent"


@dataclass
class SessionInfo:
    """Active session as shown to its owner."""

    session_id: str
    device_fingerprint: str | None
    ip_address: str | None
    user_agent: str | None
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime
    is_current: bool = False


@dataclass
class LinkedAccountInfo:
    """Linked OAuth provider account."""

    provider: AuthProvider
    provider_account_id: str
    linked_at: datetime


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """Identity established from a valid access token and live session."""

    user_id: str
    email: str
    session_id: str
    token_family: str | None = None


@dataclass(frozen=True)
class VerifiedProfile:
    """Profile whose every field comes from the identity provider's response."""

    id: str
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    picture: str | None = None
    raw_claims: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class WebLoginStart:
    """Where to send the browser to begin a provider login."""

    authorization_url: str
    state: str
    expires_in: int


@dataclass(frozen=True)
class WebLoginCompletion:
    """Outcome of a provider callback: a code to hand to the client app."""

    exchange_code: str
    redirect_uri: str
    user_id: str
    is_new_user: bool = False
