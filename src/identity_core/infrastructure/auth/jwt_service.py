"""
JWT token management service for authentication.

This module handles creation and validation of paired access/refresh tokens
and token-family identifiers. Revocation state lives in the session
registry, not in the tokens.
"""

import hashlib
import logging
import os
import secrets
from datetime import timedelta
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..config import AuthConfig
from ..time import utc_now
from .types import TokenPair

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenExpiredException(Exception):
    """Raised when a token has expired."""

    pass


class InvalidTokenException(Exception):
    """Raised when a token is invalid."""

    pass


class JWTService:
    """
    JWT token service for creating and validating tokens.

    Supports:
    - Access tokens (15 minutes default)
    - Refresh tokens (7 days default)
    - Token families shared by every rotation of one login
    - Key rotation through the ``kid`` header
    """

    def __init__(
        self,
        private_key_path: str | None = None,
        public_key_path: str | None = None,
        issuer: str = "https://auth.identity-core.local",
        access_token_expire_minutes: int = 15,
        refresh_token_expire_days: int = 7,
        environment: str | None = None,
    ):
        """
        Initialize JWT service.

        Args:
            private_key_path: Path to RSA private key for signing
            public_key_path: Path to RSA public key for verification
            issuer: Token issuer identifier
            access_token_expire_minutes: Access token expiration in minutes
            refresh_token_expire_days: Refresh token expiration in days
            environment: Deployment environment, defaults to $ENVIRONMENT
        """
        self.issuer = issuer
        self.algorithm = "RS256"
        self.access_token_expire = timedelta(minutes=access_token_expire_minutes)
        self.refresh_token_expire = timedelta(days=refresh_token_expire_days)
        environment = environment or os.getenv("ENVIRONMENT", "development")

        # Load keys - require persistent keys for production security
        if private_key_path and os.path.exists(private_key_path):
            self.private_key = self._load_private_key(private_key_path)
            self.public_key = self.private_key.public_key()
        elif environment == "production":
            raise InvalidTokenException(
                "JWT private key is required for production. "
                "Please generate RSA keys and set JWT_PRIVATE_KEY_PATH. "
                "Use: openssl genrsa -out private_key.pem 2048"
            )
        else:
            # Only allow key generation in development/testing
            logger.warning(
                "No private key found - generating ephemeral keys for DEVELOPMENT ONLY. "
                "These keys will be lost on restart and all tokens will be invalidated!"
            )
            self.private_key, self.public_key = self._generate_key_pair()

        if public_key_path and os.path.exists(public_key_path):
            self.public_key = self._load_public_key(public_key_path)

        self._private_pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        self._public_pem = self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

        # Key rotation support
        now = utc_now()
        self.key_id = f"{now.year}-{now.month:02d}-key-1"

    @classmethod
    def from_config(cls, config: AuthConfig) -> "JWTService":
        """Build the service from an ``AuthConfig``."""
        return cls(
            private_key_path=config.private_key_path,
            public_key_path=config.public_key_path,
            issuer=config.issuer,
            access_token_expire_minutes=config.access_token_expire_minutes,
            refresh_token_expire_days=config.refresh_token_expire_days,
            environment=config.environment,
        )

    def _load_private_key(self, path: str) -> Any:
        """Load RSA private key from file."""
        with open(path, "rb") as key_file:
            return serialization.load_pem_private_key(key_file.read(), password=None)

    def _load_public_key(self, path: str) -> Any:
        """Load RSA public key from file."""
        with open(path, "rb") as key_file:
            return serialization.load_pem_public_key(key_file.read())

    def _generate_key_pair(self) -> tuple[Any, Any]:
        """Generate new RSA key pair for development."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        return private_key, private_key.public_key()

    @property
    def access_token_ttl_seconds(self) -> int:
        return int(self.access_token_expire.total_seconds())

    @property
    def refresh_token_ttl(self) -> timedelta:
        return self.refresh_token_expire

    def generate_token_family(self) -> str:
        """Generate an opaque identifier shared by all rotations of one login."""
        return secrets.token_hex(16)

    @staticmethod
    def hash_refresh_token(token: str) -> str:
        """One-way hash of a refresh token. Only this value is ever persisted."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def generate_token_pair(
        self,
        user_id: str,
        email: str,
        session_id: str,
        token_family: str,
        token_version: int,
    ) -> TokenPair:
        """
        Create a signed access/refresh token pair bound to one session.

        Args:
            user_id: User identifier
            email: User email
            session_id: Session identifier
            token_family: Token family of the session
            token_version: Rotation version the refresh token represents

        Returns:
            Token pair with the access token lifetime in seconds
        """
        access_token = self._encode(
            user_id=user_id,
            email=email,
            session_id=session_id,
            token_family=token_family,
            token_version=token_version,
            token_type=ACCESS_TOKEN_TYPE,
        )
        refresh_token = self._encode(
            user_id=user_id,
            email=email,
            session_id=session_id,
            token_family=token_family,
            token_version=token_version,
            token_type=REFRESH_TOKEN_TYPE,
        )

        logger.debug(
            f"Issued token pair for user {user_id} session {session_id} version {token_version}"
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_token_ttl_seconds,
        )

    def _encode(
        self,
        user_id: str,
        email: str,
        session_id: str,
        token_family: str,
        token_version: int,
        token_type: str,
    ) -> str:
        now = utc_now()
        is_refresh = token_type == REFRESH_TOKEN_TYPE
        lifetime = self.refresh_token_expire if is_refresh else self.access_token_expire

        payload = {
            "iss": self.issuer,
            "sub": user_id,
            "aud": self._audience(token_type),
            "exp": now + lifetime,
            "iat": now,
            "jti": secrets.token_urlsafe(16),
            "sid": session_id,
            "email": email,
            "token_family": token_family,
            "token_version": token_version,
            "type": token_type,
        }

        return jwt.encode(
            payload,
            self._private_pem,
            algorithm=self.algorithm,
            headers={"kid": self.key_id},
        )

    def _audience(self, token_type: str) -> str:
        if token_type == REFRESH_TOKEN_TYPE:
            return f"{self.issuer}/refresh"
        return self.issuer

    def _decode(self, token: str, token_type: str) -> dict[str, Any]:
        """Decode a token, checking signature, issuer, audience, expiry and type."""
        payload = jwt.decode(
            token,
            self._public_pem,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            audience=self._audience(token_type),
            options={"require": ["exp", "iat", "sub", "sid", "type"]},
        )
        if payload.get("type") != token_type:
            raise jwt.InvalidTokenError(f"Expected {token_type} token")
        return dict(payload)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        """
        Verify and decode access token.

        Args:
            token: JWT access token

        Returns:
            Decoded token payload

        Raises:
            TokenExpiredException: If token is expired
            InvalidTokenException: If token is invalid
        """
        try:
            return self._decode(token, ACCESS_TOKEN_TYPE)
        except jwt.ExpiredSignatureError:
            raise TokenExpiredException("Access token has expired")
        except jwt.InvalidTokenError as e:
            raise InvalidTokenException(f"Invalid access token: {e!s}")

    def verify_refresh_token(self, token: str) -> dict[str, Any] | None:
        """
        Verify refresh token, failing closed.

        Args:
            token: JWT refresh token

        Returns:
            Decoded payload, or None on a bad signature, wrong type,
            expiry or malformed token
        """
        try:
            return self._decode(token, REFRESH_TOKEN_TYPE)
        except jwt.ExpiredSignatureError:
            failure = "expired"
        except jwt.InvalidSignatureError:
            failure = "invalid_signature"
        except jwt.InvalidAudienceError:
            failure = "wrong_type"
        except jwt.InvalidTokenError as e:
            failure = "wrong_type" if "Expected" in str(e) else "malformed"

        logger.info(f"Refresh token rejected: {failure}")
        return None
