"""
Social login and account linking.

Provider tokens are always verified server-side; identity decisions only
use the provider-attested profile.
"""

import logging
import secrets
from collections.abc import Iterable
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ....domain.exceptions import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ...database import transaction
from ...time import utc_now
from ..constants import (
    PLACEHOLDER_EMAIL_DOMAIN,
    AuthProvider,
    LoginFailureReason,
    SecurityEvent,
    UserStatus,
)
from ..models import Account, User
from ..oauth.authorization import AuthorizationClientRegistry, generate_pkce_pair
from ..oauth.verifiers import OAuthVerifierRegistry
from ..repositories.login_attempt_repository import LoginAttemptRepository
from ..repositories.oauth_state_repository import OAuthStateRepository
from ..repositories.security_log_repository import SecurityLogRepository
from ..repositories.user_repository import AccountRepository, UserRepository, normalize_email
from ..types import (
    AuthResult,
    LinkedAccountInfo,
    RequestMetadata,
    VerifiedProfile,
    WebLoginCompletion,
    WebLoginStart,
)
from .account_linking import AccountLinkingPolicy, LinkOutcome
from .exchange_codes import ExchangeCodeService
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

STATE_BYTES = 32


def placeholder_email(provider: AuthProvider, provider_account_id: str) -> str:
    """Address used for social users whose provider shares no email."""
    return f"{provider.value.lower()}_{provider_account_id}@{PLACEHOLDER_EMAIL_DOMAIN}"


def _oauth_provider(provider: AuthProvider | str) -> AuthProvider:
    try:
        provider = AuthProvider(provider)
    except ValueError:
        raise ValidationError(ErrorCode.UNSUPPORTED_PROVIDER, f"Unsupported provider: {provider}")
    if not provider.is_oauth:
        raise ValidationError(
            ErrorCode.UNSUPPORTED_PROVIDER, f"Unsupported provider: {provider.value}"
        )
    return provider


class OAuthService:
    """Social login, browser-redirect login, account linking and exchange codes."""

    def __init__(
        self,
        db_session: Session,
        verifiers: OAuthVerifierRegistry,
        session_manager: SessionManager,
        exchange_codes: ExchangeCodeService,
        linking_policy: AccountLinkingPolicy | None = None,
        authorization_clients: AuthorizationClientRegistry | None = None,
        allowed_redirect_uris: Iterable[str] = (),
        state_ttl_seconds: int = 600,
    ):
        self.db = db_session
        self.verifiers = verifiers
        self.session_manager = session_manager
        self.exchange_codes = exchange_codes
        self.linking_policy = linking_policy or AccountLinkingPolicy()
        self.authorization_clients = authorization_clients or AuthorizationClientRegistry()
        self.allowed_redirect_uris = frozenset(allowed_redirect_uris)
        self.state_ttl = timedelta(seconds=state_ttl_seconds)
        self.users = UserRepository(db_session)
        self.accounts = AccountRepository(db_session)
        self.login_attempts = LoginAttemptRepository(db_session)
        self.security_log = SecurityLogRepository(db_session)
        self.oauth_states = OAuthStateRepository(db_session)

    async def login_with_provider(
        self,
        provider: AuthProvider | str,
        token: str,
        metadata: RequestMetadata | None = None,
        name: str | None = None,
    ) -> AuthResult:
        """
        Sign in with a provider token.

        Args:
            provider: Identity provider that issued the token
            token: ID token (signed-assertion providers) or access token
                (opaque-token providers)
            metadata: Client context for session attribution and audit
            name: Display name to use when the provider supplies none

        Returns:
            Authentication result; ``is_new_user`` is set on first sign-in

        Raises:
            ValidationError: If the provider is not supported
            UnauthorizedError: If the token is invalid, the provider is
                unreachable or the user may not sign in
            ConflictError: SOCIAL_ACCOUNT_NOT_LINKED if the email belongs to
                an existing user and the link must be made explicitly
        """
        metadata = metadata or RequestMetadata()
        provider = _oauth_provider(provider)
        profile = await self._verify(provider, token, metadata)

        email = normalize_email(profile.email) if profile.email else None
        account = self.accounts.find_by_provider(provider, profile.id)
        linked_user = self.users.find_by_id(str(account.user_id)) if account else None
        email_owner = self.users.find_by_email(email) if email and linked_user is None else None

        try:
            decision = self.linking_policy.decide(provider, profile, linked_user, email_owner)
        except UnauthorizedError as e:
            blocked = linked_user or email_owner
            reason = (
                LoginFailureReason.ACCOUNT_LOCKED
                if e.code == ErrorCode.ACCOUNT_LOCKED
                else LoginFailureReason.ACCOUNT_SUSPENDED
            )
            blocked_email = str(blocked.email) if blocked else email
            self._record_failure(blocked_email, provider, reason, metadata)
            raise

        if decision.outcome is LinkOutcome.LINK_REQUIRED:
            self._reject_link_required(provider, profile, decision.user, decision.reason, metadata)

        is_new_user = False
        try:
            with transaction(self.db):
                if decision.outcome is LinkOutcome.REGISTER:
                    user = self._register(provider, profile, email, name, metadata)
                    is_new_user = True
                else:
                    user = decision.user
                    if decision.outcome is LinkOutcome.AUTO_LINK:
                        self._auto_link(user, provider, profile, metadata)

                result = self.session_manager.create_session(user, metadata)
                result.is_new_user = is_new_user
                self.login_attempts.create(
                    str(user.email),
                    provider,
                    success=True,
                    ip_address=metadata.normalized_ip,
                    user_agent=metadata.user_agent,
                )
                self.security_log.create(
                    SecurityEvent.LOGIN_SUCCESS,
                    user_id=str(user.id),
                    ip_address=metadata.normalized_ip,
                    user_agent=metadata.user_agent,
                    metadata={"session_id": result.session_id, "provider": provider.value},
                )
        except IntegrityError:
            # Lost a race with a concurrent first sign-in of the same identity
            logger.warning(f"Concurrent {provider.value} sign-in for identity {profile.id}")
            raise ConflictError(
                ErrorCode.OAUTH_ACCOUNT_ALREADY_LINKED,
                "This identity was linked by a concurrent request, please retry",
            )

        logger.info(
            f"{provider.value} login for user {user.id} ({decision.outcome.value}) "
            f"from {metadata.normalized_ip}"
        )
        return result

    def start_web_login(
        self,
        provider: AuthProvider | str,
        redirect_uri: str,
        metadata: RequestMetadata | None = None,
    ) -> WebLoginStart:
        """
        Begin a browser-redirect login.

        Args:
            provider: Identity provider to sign in with
            redirect_uri: Client URI the exchange code is delivered to once
                the provider calls back; must be on the allowlist
            metadata: Client context stored with the pending login

        Returns:
            The provider consent URL and the single-use state it carries

        Raises:
            ValidationError: UNSUPPORTED_PROVIDER if browser login is not
                configured for the provider, INVALID_REDIRECT_URI if the
                redirect URI is not allowed
        """
        metadata = metadata or RequestMetadata()
        provider = _oauth_provider(provider)
        client = self.authorization_clients.get(provider)
        if redirect_uri not in self.allowed_redirect_uris:
            logger.warning(f"Rejected redirect URI {redirect_uri!r} for {provider.value} login")
            raise ValidationError(ErrorCode.INVALID_REDIRECT_URI, "Redirect URI is not allowed")

        state = secrets.token_urlsafe(STATE_BYTES)
        code_verifier: str | None = None
        code_challenge: str | None = None
        if client.supports_pkce:
            code_verifier, code_challenge = generate_pkce_pair()
        with transaction(self.db):
            self.oauth_states.create(
                state,
                provider,
                redirect_uri,
                expires_at=utc_now() + self.state_ttl,
                code_verifier=code_verifier,
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
            )

        logger.debug(f"{provider.value} browser login started from {metadata.normalized_ip}")
        return WebLoginStart(
            authorization_url=client.authorization_url(state, code_challenge),
            state=state,
            expires_in=int(self.state_ttl.total_seconds()),
        )

    async def complete_web_login(
        self,
        provider: AuthProvider | str,
        code: str,
        state: str,
        metadata: RequestMetadata | None = None,
    ) -> WebLoginCompletion:
        """
        Finish a browser-redirect login from the provider callback.

        The state is consumed before the code is exchanged, so a replayed
        callback fails even when the first one did not complete. The
        provider token then goes through the same verification and linking
        as ``login_with_provider`` and the resulting tokens are parked
        behind an exchange code.

        Args:
            provider: Identity provider that called back
            code: Authorization code from the callback
            state: State from the callback
            metadata: Client context for session attribution and audit

        Returns:
            Exchange code and the redirect URI chosen when the login started

        Raises:
            ValidationError: If browser login is not configured for the provider
            UnauthorizedError: OAUTH_STATE_INVALID for an unknown, expired or
                reused state; OAUTH_TOKEN_INVALID or OAUTH_PROVIDER_UNAVAILABLE
                if the code cannot be exchanged; any error of
                ``login_with_provider``
            ConflictError: SOCIAL_ACCOUNT_NOT_LINKED as for ``login_with_provider``
        """
        metadata = metadata or RequestMetadata()
        provider = _oauth_provider(provider)
        client = self.authorization_clients.get(provider)

        with transaction(self.db):
            pending = self.oauth_states.consume(state, provider)
        if pending is None:
            self._record_failure(None, provider, LoginFailureReason.OAUTH_STATE_INVALID, metadata)
            raise UnauthorizedError(ErrorCode.OAUTH_STATE_INVALID, "Invalid or expired login state")

        try:
            token = await client.exchange(code, pending.code_verifier)
        except UnauthorizedError:
            self._record_failure(None, provider, LoginFailureReason.OAUTH_TOKEN_INVALID, metadata)
            raise

        result = await self.login_with_provider(provider, token, metadata)
        exchange_code = self.create_exchange_code(result)
        logger.info(f"{provider.value} browser login completed for user {result.user_id}")

        return WebLoginCompletion(
            exchange_code=exchange_code,
            redirect_uri=str(pending.redirect_uri),
            user_id=result.user_id,
            is_new_user=result.is_new_user,
        )

    async def _verify(
        self, provider: AuthProvider, token: str, metadata: RequestMetadata
    ) -> VerifiedProfile:
        verifier = self.verifiers.get(provider)
        try:
            return await verifier.verify(token)
        except UnauthorizedError:
            self._record_failure(None, provider, LoginFailureReason.OAUTH_TOKEN_INVALID, metadata)
            raise

    def _register(
        self,
        provider: AuthProvider,
        profile: VerifiedProfile,
        email: str | None,
        name: str | None,
        metadata: RequestMetadata,
    ) -> User:
        """Create user, profile, consent and provider account in the open transaction."""
        email_verified = bool(email) and profile.email_verified
        user = self.users.create(
            email or placeholder_email(provider, profile.id),
            UserStatus.ACTIVE if email_verified else UserStatus.PENDING_VERIFY,
            email_verified=email_verified,
            name=profile.name or name,
            profile_image=profile.picture,
            terms_agreed=True,
            privacy_agreed=True,
        )
        self.accounts.create_oauth_account(str(user.id), provider, profile.id)
        self.security_log.create(
            SecurityEvent.REGISTRATION,
            user_id=str(user.id),
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={"provider": provider.value},
        )
        logger.info(f"New {provider.value} user registered: {user.id}")
        return user

    def _auto_link(
        self,
        user: User,
        provider: AuthProvider,
        profile: VerifiedProfile,
        metadata: RequestMetadata,
    ) -> None:
        self.accounts.create_oauth_account(str(user.id), provider, profile.id)
        self.security_log.create(
            SecurityEvent.OAUTH_AUTO_LINKED,
            user_id=str(user.id),
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={"provider": provider.value, "provider_account_id": profile.id},
        )
        logger.info(f"Auto-linked {provider.value} identity to existing user {user.id}")

    def _reject_link_required(
        self,
        provider: AuthProvider,
        profile: VerifiedProfile,
        user: User | None,
        reason: str | None,
        metadata: RequestMetadata,
    ) -> None:
        """Audit a refused auto-link, commit the audit trail and fail."""
        assert user is not None
        self.security_log.create(
            SecurityEvent.OAUTH_LINK_REQUIRED,
            user_id=str(user.id),
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
            metadata={
                "provider": provider.value,
                "provider_account_id": profile.id,
                "reason": reason,
            },
        )
        self._record_failure(
            str(user.email), provider, LoginFailureReason.OAUTH_LINK_REQUIRED, metadata
        )
        raise ConflictError(
            ErrorCode.SOCIAL_ACCOUNT_NOT_LINKED,
            "An account with this email already exists, sign in and link "
            f"{provider.value} from account settings",
            {"provider": provider.value, "reason": reason},
        )

    def _record_failure(
        self,
        email: str | None,
        provider: AuthProvider,
        reason: LoginFailureReason,
        metadata: RequestMetadata,
    ) -> None:
        """Record a failed social login and commit it before the error propagates."""
        self.login_attempts.create(
            email,
            provider,
            success=False,
            failure_reason=reason,
            ip_address=metadata.normalized_ip,
            user_agent=metadata.user_agent,
        )
        self.db.commit()
        logger.info(f"Failed {provider.value} login: {reason.value}")

    async def link_account(
        self,
        user_id: str,
        provider: AuthProvider | str,
        token: str,
        metadata: RequestMetadata | None = None,
    ) -> LinkedAccountInfo:
        """
        Link a provider identity to a signed-in user.

        The token is verified first; linking an identity the user already
        owns is a no-op.

        Raises:
            ValidationError: If the provider is not supported
            NotFoundError: If the user does not exist
            UnauthorizedError: If the provider token is invalid
            ConflictError: If the identity belongs to another user or the user
                already has an account with this provider
        """
        metadata = metadata or RequestMetadata()
        provider = _oauth_provider(provider)
        if self.users.find_by_id(user_id) is None:
            raise NotFoundError(ErrorCode.USER_NOT_FOUND, "User not found")

        profile = await self.verifiers.get(provider).verify(token)

        existing = self.accounts.find_by_provider(provider, profile.id)
        if existing is not None:
            if str(existing.user_id) != user_id:
                raise ConflictError(
                    ErrorCode.OAUTH_ACCOUNT_ALREADY_LINKED,
                    f"This {provider.value} account is linked to another user",
                )
            return self._to_info(existing)

        if self.accounts.find_by_user_and_provider(user_id, provider) is not None:
            raise ConflictError(
                ErrorCode.PROVIDER_ALREADY_LINKED,
                f"A different {provider.value} account is already linked",
            )

        try:
            with transaction(self.db):
                account = self.accounts.create_oauth_account(user_id, provider, profile.id)
                self.security_log.create(
                    SecurityEvent.ACCOUNT_LINKED,
                    user_id=user_id,
                    ip_address=metadata.normalized_ip,
                    user_agent=metadata.user_agent,
                    metadata={"provider": provider.value, "provider_account_id": profile.id},
                )
        except IntegrityError:
            raise ConflictError(
                ErrorCode.OAUTH_ACCOUNT_ALREADY_LINKED,
                f"This {provider.value} account is linked to another user",
            )

        logger.info(f"Account linked: {provider.value} for user {user_id}")
        return self._to_info(account)

    def unlink_account(
        self,
        user_id: str,
        provider: AuthProvider | str,
        metadata: RequestMetadata | None = None,
    ) -> None:
        """
        Remove a linked provider account.

        Raises:
            ValidationError: For the credential account or the last remaining
                login method
            NotFoundError: If no account of this provider is linked
        """
        metadata = metadata or RequestMetadata()
        provider = _oauth_provider(provider)

        with transaction(self.db):
            account = self.accounts.find_by_user_and_provider(user_id, provider)
            if account is None:
                raise NotFoundError(ErrorCode.ACCOUNT_NOT_FOUND, "Linked account not found")
            if self.accounts.count_by_user_id(user_id) <= 1:
                raise ValidationError(
                    ErrorCode.CANNOT_UNLINK_LAST_ACCOUNT, "Cannot unlink the last login method"
                )

            self.accounts.delete(account)
            self.security_log.create(
                SecurityEvent.ACCOUNT_UNLINKED,
                user_id=user_id,
                ip_address=metadata.normalized_ip,
                user_agent=metadata.user_agent,
                metadata={"provider": provider.value},
            )

        logger.info(f"Account unlinked: {provider.value} for user {user_id}")

    def list_linked_accounts(self, user_id: str) -> list[LinkedAccountInfo]:
        return [
            self._to_info(account)
            for account in self.accounts.find_by_user_id(user_id)
            if account.provider != AuthProvider.CREDENTIAL.value
        ]

    @staticmethod
    def _to_info(account: Account) -> LinkedAccountInfo:
        return LinkedAccountInfo(
            provider=AuthProvider(account.provider),
            provider_account_id=str(account.provider_account_id),
            linked_at=account.created_at,
        )

    def create_exchange_code(self, result: AuthResult) -> str:
        """Park a login result behind a single-use exchange code."""
        with transaction(self.db):
            return self.exchange_codes.create(result)

    def redeem_exchange_code(self, code: str) -> AuthResult:
        """
        Redeem an exchange code for the tokens it holds.

        Raises:
            UnauthorizedError: If the code is unknown, expired or already used
        """
        with transaction(self.db):
            return self.exchange_codes.redeem(code)
