"""
Configuration Management - Loads identity core settings from the environment
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


@dataclass
class DatabaseConfig:
    """Database configuration settings"""

    url: str
    echo: bool = False
    pool_size: int = 5

    @classmethod
    def from_env(cls, prefix: str = "") -> "DatabaseConfig":
        """Load database config from environment variables"""
        return cls(
            url=os.getenv(f"{prefix}DATABASE_URL", "sqlite:///./identity_core.db"),
            echo=_env_bool(f"{prefix}DATABASE_ECHO"),
            pool_size=int(os.getenv(f"{prefix}DATABASE_POOL_SIZE", "5")),
        )


@dataclass
class CacheConfig:
    """Cache configuration settings"""

    redis_url: str | None
    session_ttl_seconds: int
    key_prefix: str

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Load cache config from environment variables"""
        return cls(
            redis_url=os.getenv("REDIS_URL"),
            session_ttl_seconds=int(os.getenv("SESSION_CACHE_TTL_SECONDS", "30")),
            key_prefix=os.getenv("CACHE_KEY_PREFIX", ""),
        )


@dataclass
class AuthConfig:
    """Credential, token and abuse-mitigation settings"""

    environment: str = "development"
    issuer: str = "https://auth.identity-core.local"
    private_key_path: str | None = None
    public_key_path: str | None = None
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # Argon2id cost parameters
    argon2_memory_cost: int = 65536
    argon2_time_cost: int = 3
    argon2_parallelism: int = 4
    argon2_hash_length: int = 32

    # One-time verification codes
    verification_code_length: int = 6
    verification_code_expiry_minutes: int = 10
    verification_max_attempts: int = 5
    verification_resend_cooldown_seconds: int = 60

    # Login lockout
    max_login_attempts: int = 5
    lockout_duration_minutes: int = 15

    # Exchange codes
    exchange_code_ttl_seconds: int = 600
    exchange_code_encryption_key: str | None = None

    # Browser-redirect logins
    allowed_redirect_uris: tuple[str, ...] = ()
    oauth_state_ttl_seconds: int = 600

    # Retention for append-only logs
    login_attempt_retention_days: int = 30
    security_log_retention_days: int = 90

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Load auth config from environment variables"""
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            issuer=os.getenv("JWT_ISSUER", "https://auth.identity-core.local"),
            private_key_path=os.getenv("JWT_PRIVATE_KEY_PATH"),
            public_key_path=os.getenv("JWT_PUBLIC_KEY_PATH"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15")),
            refresh_token_expire_days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7")),
            argon2_memory_cost=int(os.getenv("ARGON2_MEMORY_COST", "65536")),
            argon2_time_cost=int(os.getenv("ARGON2_TIME_COST", "3")),
            argon2_parallelism=int(os.getenv("ARGON2_PARALLELISM", "4")),
            argon2_hash_length=int(os.getenv("ARGON2_HASH_LENGTH", "32")),
            verification_code_length=int(os.getenv("VERIFICATION_CODE_LENGTH", "6")),
            verification_code_expiry_minutes=int(
                os.getenv("VERIFICATION_CODE_EXPIRY_MINUTES", "10")
            ),
            verification_max_attempts=int(os.getenv("VERIFICATION_MAX_ATTEMPTS", "5")),
            verification_resend_cooldown_seconds=int(
                os.getenv("VERIFICATION_RESEND_COOLDOWN_SECONDS", "60")
            ),
            max_login_attempts=int(os.getenv("MAX_LOGIN_ATTEMPTS", "5")),
            lockout_duration_minutes=int(os.getenv("LOCKOUT_DURATION_MINUTES", "15")),
            exchange_code_ttl_seconds=int(os.getenv("EXCHANGE_CODE_TTL_SECONDS", "600")),
            exchange_code_encryption_key=os.getenv("EXCHANGE_CODE_ENCRYPTION_KEY"),
            allowed_redirect_uris=_env_list("OAUTH_ALLOWED_REDIRECT_URIS"),
            oauth_state_ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
            login_attempt_retention_days=int(os.getenv("LOGIN_ATTEMPT_RETENTION_DAYS", "30")),
            security_log_retention_days=int(os.getenv("SECURITY_LOG_RETENTION_DAYS", "90")),
        )


@dataclass
class OAuthConfig:
    """External identity provider settings"""

    apple_client_id: str | None = None
    google_client_id: str | None = None
    provider_timeout_seconds: float = 5.0
    jwks_cache_seconds: int = 3600
    jwks_min_refresh_interval_seconds: int = 60

    # Authorization code flow; the callback URL may contain a {provider} placeholder
    callback_url: str | None = None
    apple_client_secret: str | None = None
    google_client_secret: str | None = None
    kakao_client_id: str | None = None
    kakao_client_secret: str | None = None
    naver_client_id: str | None = None
    naver_client_secret: str | None = None

    def callback_url_for(self, provider: str) -> str | None:
        if not self.callback_url:
            return None
        return self.callback_url.format(provider=provider.lower())

    @classmethod
    def from_env(cls) -> "OAuthConfig":
        """Load OAuth config from environment variables"""
        return cls(
            apple_client_id=os.getenv("APPLE_CLIENT_ID"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            provider_timeout_seconds=float(os.getenv("OAUTH_PROVIDER_TIMEOUT_SECONDS", "5.0")),
            jwks_cache_seconds=int(os.getenv("OAUTH_JWKS_CACHE_SECONDS", "3600")),
            jwks_min_refresh_interval_seconds=int(
                os.getenv("OAUTH_JWKS_MIN_REFRESH_INTERVAL_SECONDS", "60")
            ),
            callback_url=os.getenv("OAUTH_CALLBACK_URL"),
            apple_client_secret=os.getenv("APPLE_CLIENT_SECRET"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            kakao_client_id=os.getenv("KAKAO_CLIENT_ID"),
            kakao_client_secret=os.getenv("KAKAO_CLIENT_SECRET"),
            naver_client_id=os.getenv("NAVER_CLIENT_ID"),
            naver_client_secret=os.getenv("NAVER_CLIENT_SECRET"),
        )


@dataclass
class Config:
    """Application configuration"""

    database: DatabaseConfig
    cache: CacheConfig
    auth: AuthConfig
    oauth: OAuthConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load all configuration from environment variables"""
        return cls(
            database=DatabaseConfig.from_env(),
            cache=CacheConfig.from_env(),
            auth=AuthConfig.from_env(),
            oauth=OAuthConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Global configuration instance (lazy-loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
        logger.debug(f"Loaded configuration for environment {_config.auth.environment}")
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next access reloads it."""
    global _config
    _config = None


def get_database_config() -> DatabaseConfig:
    """Get database configuration"""
    return get_config().database


def get_cache_config() -> CacheConfig:
    """Get cache configuration"""
    return get_config().cache


def get_auth_config() -> AuthConfig:
    """Get auth configuration"""
    return get_config().auth


def get_oauth_config() -> OAuthConfig:
    """Get OAuth provider configuration"""
    return get_config().oauth
