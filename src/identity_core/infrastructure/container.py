"""
Dependency wiring for the identity core.

Process-wide resources (engine, redis client, signing keys, HTTP client,
provider key caches) live on the container; database sessions and the
services bound to them are created per unit of work.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import httpx
import redis
from sqlalchemy.orm import Session

from .auth.email import EmailSender, LoggingEmailSender
from .auth.jwt_service import JWTService
from .auth.models import Base
from .auth.oauth.authorization import build_default_authorization_clients
from .auth.oauth.verifiers import build_default_registry
from .auth.services.auth_service import AuthService
from .auth.services.password_service import PasswordService
from .cache.session_cache import CacheClient, InMemoryCache, SessionValidityCache
from .config import Config, get_config
from .database import create_database_engine, create_session_factory

logger = logging.getLogger(__name__)


class AuthContainer:
    """Builds and holds the shared dependencies of ``AuthService``."""

    def __init__(
        self,
        config: Config | None = None,
        email_sender: EmailSender | None = None,
        cache_client: CacheClient | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or get_config()

        self.engine = create_database_engine(self.config.database)
        self.session_factory = create_session_factory(self.engine)

        if cache_client is None:
            if self.config.cache.redis_url:
                cache_client = redis.Redis.from_url(self.config.cache.redis_url)
            else:
                logger.warning("REDIS_URL not set - using a process-local session cache")
                cache_client = InMemoryCache()
        self.session_cache = SessionValidityCache(
            cache_client,
            ttl_seconds=self.config.cache.session_ttl_seconds,
            key_prefix=self.config.cache.key_prefix,
        )

        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.config.oauth.provider_timeout_seconds
        )
        self.verifiers = build_default_registry(self.config.oauth, self.http_client)
        self.authorization_clients = build_default_authorization_clients(
            self.config.oauth, self.http_client
        )

        self.jwt_service = JWTService.from_config(self.config.auth)
        self.password_service = PasswordService.from_config(self.config.auth)
        self.email_sender = email_sender or LoggingEmailSender()

    def create_schema(self) -> None:
        """Create all auth tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    def auth_service(self, db_session: Session | None = None) -> AuthService:
        """Build an ``AuthService`` bound to one database session."""
        return AuthService(
            db_session or self.session_factory(),
            self.jwt_service,
            self.session_cache,
            config=self.config.auth,
            email_sender=self.email_sender,
            verifiers=self.verifiers,
            password_service=self.password_service,
            authorization_clients=self.authorization_clients,
        )

    @contextmanager
    def unit_of_work(self) -> Iterator[AuthService]:
        """Yield an ``AuthService`` whose database session is closed afterwards."""
        db_session = self.session_factory()
        try:
            yield self.auth_service(db_session)
        finally:
            db_session.close()

    async def aclose(self) -> None:
        """Release the HTTP client and database connections."""
        await self.http_client.aclose()
        self.engine.dispose()
