"""
Main auth service orchestrator.

Provides a unified interface for every auth operation by orchestrating the
specialized services.
"""

import logging

from sqlalchemy.orm import Session

from ...cache.session_cache import SessionValidityCache
from ...config import AuthConfig
from ...database import transaction
from ..constants import AuthProvider
from ..email import EmailSender, LoggingEmailSender
from ..jwt_service import JWTService
from ..oauth.authorization import AuthorizationClientRegistry
from ..oauth.verifiers import OAuthVerifierRegistry
from ..types import (
    AuthenticatedPrincipal,
    AuthResult,
    LinkedAccountInfo,
    RegistrationResult,
    RequestMetadata,
    SessionInfo,
    WebLoginCompletion,
    WebLoginStart,
)
from .authentication import AuthenticationService
from .exchange_codes import ExchangeCodeService
from .maintenance import MaintenanceService
from .oauth_service import OAuthService
from .password_management import PasswordManagementService
from .password_service import PasswordService
from .registration import RegistrationService
from .session_manager import SessionManager
from .verification_service import VerificationService

logger = logging.getLogger(__name__)


class AuthService:
    """
    Main auth service.

    Orchestrates registration, credential and social login, password
    management, session rotation and revocation, and account linking by
    delegating to specialized services. All of them share one database
    session, so one ``AuthService`` serves one unit of work.
    """

    def __init__(
        self,
        db_session: Session,
        jwt_service: JWTService,
        session_cache: SessionValidityCache,
        config: AuthConfig | None = None,
        email_sender: EmailSender | None = None,
        verifiers: OAuthVerifierRegistry | None = None,
        password_service: PasswordService | None = None,
        authorization_clients: AuthorizationClientRegistry | None = None,
    ):
        """
        Initialize auth service with its dependencies.

        Args:
            db_session: Database session
            jwt_service: JWT token service
            session_cache: Session validity cache
            config: Auth settings, defaults to built-in values
            email_sender: Outbound code delivery, defaults to logging only
            verifiers: OAuth verifiers, defaults to none configured
            password_service: Password hashing, defaults to one built from config
            authorization_clients: Browser-redirect login clients, defaults to none
        """
        self.db = db_session
        self.config = config or AuthConfig()

        self.password_service = password_service or PasswordService.from_config(self.config)
        self.email_sender = email_sender or LoggingEmailSender()

        self.verification_service = VerificationService(
            db_session,
            code_length=self.config.verification_code_length,
            expiry_minutes=self.config.verification_code_expiry_minutes,
            max_attempts=self.config.verification_max_attempts,
            resend_cooldown_seconds=self.config.verification_resend_cooldown_seconds,
        )
        self.session_manager = SessionManager(db_session, jwt_service, session_cache)

        self.registration_service = RegistrationService(
            db_session,
            self.password_service,
            self.verification_service,
            self.session_manager,
            self.email_sender,
        )
        self.authentication_service = AuthenticationService(
            db_session,
            self.password_service,
            self.session_manager,
            max_login_attempts=self.config.max_login_attempts,
            lockout_duration_minutes=self.config.lockout_duration_minutes,
        )
        self.password_management = PasswordManagementService(
            db_session,
            self.password_service,
            self.verification_service,
            self.session_manager,
            self.email_sender,
        )

        self.exchange_codes = ExchangeCodeService(
            db_session,
            encryption_key=self.config.exchange_code_encryption_key,
            ttl_seconds=self.config.exchange_code_ttl_seconds,
            environment=self.config.environment,
        )
        self.oauth_service = OAuthService(
            db_session,
            verifiers or OAuthVerifierRegistry(),
            self.session_manager,
            self.exchange_codes,
            authorization_clients=authorization_clients,
            allowed_redirect_uris=self.config.allowed_redirect_uris,
            state_ttl_seconds=self.config.oauth_state_ttl_seconds,
        )
        self.maintenance = MaintenanceService(
            db_session,
            self.verification_service,
            self.exchange_codes,
            login_attempt_retention_days=self.config.login_attempt_retention_days,
            security_log_retention_days=self.config.security_log_retention_days,
        )

    # Registration operations
    async def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        terms_agreed: bool = False,
        privacy_agreed: bool = False,
        marketing_agreed: bool = False,
        metadata: RequestMetadata | None = None,
    ) -> RegistrationResult:
        """Register a new credential user."""
        return await self.registration_service.register(
            email, password, name, terms_agreed, privacy_agreed, marketing_agreed, metadata
        )

    async def verify_email(
        self, email: str, code: str, metadata: RequestMetadata | None = None
    ) -> AuthResult:
        """Verify an email address and open the first session."""
        return await self.registration_service.verify_email(email, code, metadata)

    async def resend_verification(self, email: str) -> str:
        """Resend the email verification code."""
        return await self.registration_service.resend_verification(email)

    # Authentication operations
    async def login(
        self, email: str, password: str, metadata: RequestMetadata | None = None
    ) -> AuthResult:
        """Authenticate with email and password and create a session."""
        return await self.authentication_service.login(email, password, metadata)

    async def login_with_provider(
        self,
        provider: AuthProvider | str,
        token: str,
        metadata: RequestMetadata | None = None,
        name: str | None = None,
    ) -> AuthResult:
        """Authenticate with an identity provider token and create a session."""
        return await self.oauth_service.login_with_provider(provider, token, metadata, name)

    async def start_web_login(
        self,
        provider: AuthProvider | str,
        redirect_uri: str,
        metadata: RequestMetadata | None = None,
    ) -> WebLoginStart:
        """Begin a browser-redirect login and return the provider consent URL."""
        return self.oauth_service.start_web_login(provider, redirect_uri, metadata)

    async def complete_web_login(
        self,
        provider: AuthProvider | str,
        code: str,
        state: str,
        metadata: RequestMetadata | None = None,
    ) -> WebLoginCompletion:
        """Finish a browser-redirect login and return a single-use exchange code."""
        return await self.oauth_service.complete_web_login(provider, code, state, metadata)

    def validate_access_token(self, access_token: str) -> AuthenticatedPrincipal:
        """Authenticate a request from its access token."""
        return self.session_manager.validate_access_token(access_token)

    # Session operations
    async def refresh_tokens(
        self, refresh_token: str, metadata: RequestMetadata | None = None
    ) -> AuthResult:
        """Rotate a refresh token."""
        with transaction(self.db):
            return await self.session_manager.refresh_tokens(
                refresh_token, metadata or RequestMetadata()
            )

    async def logout(
        self, user_id: str, session_id: str, metadata: RequestMetadata | None = None
    ) -> None:
        """Revoke the current session."""
        with self.session_manager.revocation():
            self.session_manager.logout(user_id, session_id, metadata or RequestMetadata())

    async def logout_all(
        self,
        user_id: str,
        metadata: RequestMetadata | None = None,
        exclude_session_id: str | None = None,
    ) -> int:
        """Revoke every session of the user."""
        with self.session_manager.revocation():
            return self.session_manager.logout_all(
                user_id, metadata or RequestMetadata(), exclude_session_id=exclude_session_id
            )

    async def get_active_sessions(
        self, user_id: str, current_session_id: str | None = None
    ) -> list[SessionInfo]:
        """Get all active sessions for a user."""
        return self.session_manager.get_active_sessions(user_id, current_session_id)

    async def revoke_session(
        self, user_id: str, session_id: str, metadata: RequestMetadata | None = None
    ) -> None:
        """Revoke a specific session of the user."""
        with self.session_manager.revocation():
            self.session_manager.revoke_session(user_id, session_id, metadata or RequestMetadata())

    # Password operations
    async def forgot_password(self, email: str) -> str:
        """Request a password reset code."""
        return await self.password_management.forgot_password(email)

    async def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        metadata: RequestMetadata | None = None,
    ) -> int:
        """Reset the password with a code, revoking every session."""
        return await self.password_management.reset_password(email, code, new_password, metadata)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        metadata: RequestMetadata | None = None,
    ) -> None:
        """Change the password of a signed-in user."""
        await self.password_management.change_password(
            user_id, current_password, new_password, metadata
        )

    # Account linking operations
    async def link_account(
        self,
        user_id: str,
        provider: AuthProvider | str,
        token: str,
        metadata: RequestMetadata | None = None,
    ) -> LinkedAccountInfo:
        """Link a provider identity to the user."""
        return await self.oauth_service.link_account(user_id, provider, token, metadata)

    async def unlink_account(
        self,
        user_id: str,
        provider: AuthProvider | str,
        metadata: RequestMetadata | None = None,
    ) -> None:
        """Unlink a provider identity from the user."""
        self.oauth_service.unlink_account(user_id, provider, metadata)

    async def list_linked_accounts(self, user_id: str) -> list[LinkedAccountInfo]:
        """List the user's linked provider accounts."""
        return self.oauth_service.list_linked_accounts(user_id)

    # Exchange codes
    async def create_exchange_code(self, result: AuthResult) -> str:
        """Park a login result behind a single-use exchange code."""
        return self.oauth_service.create_exchange_code(result)

    async def redeem_exchange_code(self, code: str) -> AuthResult:
        """Redeem an exchange code for its tokens."""
        return self.oauth_service.redeem_exchange_code(code)

    # Maintenance
    def purge_expired_records(self) -> dict[str, int]:
        """Delete expired and out-of-retention records."""
        return self.maintenance.purge_expired_records()
