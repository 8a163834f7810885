"""
Account linking policy.

Decides, on every social login, whether to sign in a linked user, register
a new one, auto-link the provider identity to an existing user, or demand
explicit linking.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from ....domain.exceptions import ErrorCode, UnauthorizedError
from ..constants import TRUSTED_EMAIL_PROVIDERS, AuthProvider, UserStatus
from ..models import User
from ..types import VerifiedProfile

logger = logging.getLogger(__name__)


def ensure_user_can_sign_in(user: User) -> None:
    """
    Reject locked and suspended users.

    Raises:
        UnauthorizedError: If the user may not sign in
    """
    if user.status == UserStatus.LOCKED.value:
        raise UnauthorizedError(ErrorCode.ACCOUNT_LOCKED, "Account is locked")
    if user.status == UserStatus.SUSPENDED.value:
        raise UnauthorizedError(ErrorCode.ACCOUNT_SUSPENDED, "Account is suspended")


class LinkOutcome(str, Enum):
    """Result of the linking decision table."""

    AUTHENTICATE = "authenticate"
    REGISTER = "register"
    AUTO_LINK = "auto_link"
    LINK_REQUIRED = "link_required"


@dataclass(frozen=True)
class LinkDecision:
    """Outcome plus the user it applies to, if any."""

    outcome: LinkOutcome
    user: User | None = None
    reason: str | None = None


class AccountLinkingPolicy:
    """
    Decision table keyed by (linked account exists, email owner exists).

    | linked account | email owner                              | outcome       |
    |----------------|------------------------------------------|---------------|
    | yes            | -                                        | AUTHENTICATE  |
    | no             | no                                       | REGISTER      |
    | no             | yes, trusted provider and verified email | AUTO_LINK     |
    | no             | yes, otherwise                           | LINK_REQUIRED |

    Locked and suspended users are rejected before any outcome involving
    them is returned.
    """

    def __init__(self, trusted_providers: frozenset[AuthProvider] = TRUSTED_EMAIL_PROVIDERS):
        self.trusted_providers = trusted_providers

    def is_trusted(self, provider: AuthProvider) -> bool:
        return provider in self.trusted_providers

    def decide(
        self,
        provider: AuthProvider,
        profile: VerifiedProfile,
        linked_user: User | None,
        email_owner: User | None,
    ) -> LinkDecision:
        """
        Evaluate the decision table.

        Args:
            provider: Provider that verified the profile
            profile: Provider-verified profile
            linked_user: Owner of the account for (provider, profile.id), if any
            email_owner: Existing user with the profile's email, if any

        Returns:
            The linking decision

        Raises:
            UnauthorizedError: If the user involved is locked or suspended
        """
        if linked_user is not None:
            ensure_user_can_sign_in(linked_user)
            return LinkDecision(LinkOutcome.AUTHENTICATE, linked_user)

        if email_owner is None:
            return LinkDecision(LinkOutcome.REGISTER)

        ensure_user_can_sign_in(email_owner)

        if self.is_trusted(provider) and profile.email_verified:
            return LinkDecision(LinkOutcome.AUTO_LINK, email_owner)

        reason = "email_not_verified" if self.is_trusted(provider) else "untrusted_provider"
        logger.info(
            f"{provider.value} identity collides with user {email_owner.id}, "
            f"linking required: {reason}"
        )
        return LinkDecision(LinkOutcome.LINK_REQUIRED, email_owner, reason)
