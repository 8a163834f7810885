"""
User and account persistence.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ...time import utc_now
from ..constants import AuthProvider, UserStatus
from ..models import Account, User, UserConsent, UserProfile

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    """Canonical form used for lookups and uniqueness."""
    return email.strip().lower()


class UserRepository:
    """Users with their profile and consent rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_by_id(self, user_id: str) -> User | None:
        return self.db.get(User, user_id, populate_existing=True)

    def find_by_email(self, email: str) -> User | None:
        return self.db.scalars(
            select(User)
            .where(User.email == normalize_email(email))
            .execution_options(populate_existing=True)
        ).first()

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def create(
        self,
        email: str,
        status: UserStatus,
        email_verified: bool = False,
        name: str | None = None,
        profile_image: str | None = None,
        terms_agreed: bool = False,
        privacy_agreed: bool = False,
        marketing_agreed: bool = False,
    ) -> User:
        """Create a user together with its profile and consent record."""
        now = utc_now()
        user = User(
            email=normalize_email(email),
            status=status.value,
            email_verified_at=now if email_verified else None,
        )
        self.db.add(user)
        self.db.flush()

        self.db.add(UserProfile(user_id=user.id, name=name, profile_image=profile_image))
        self.db.add(
            UserConsent(
                user_id=user.id,
                terms_agreed_at=now if terms_agreed else None,
                privacy_agreed_at=now if privacy_agreed else None,
                marketing_agreed_at=now if marketing_agreed else None,
            )
        )
        self.db.flush()
        return user


class AccountRepository:
    """Provider accounts owned by users."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_by_provider(self, provider: AuthProvider, provider_account_id: str) -> Account | None:
        return self.db.scalars(
            select(Account).where(
                Account.provider == provider.value,
                Account.provider_account_id == provider_account_id,
            )
        ).first()

    def find_by_user_and_provider(self, user_id: str, provider: AuthProvider) -> Account | None:
        return self.db.scalars(
            select(Account).where(Account.user_id == user_id, Account.provider == provider.value)
        ).first()

    def find_credential_account(self, user_id: str) -> Account | None:
        return self.find_by_user_and_provider(user_id, AuthProvider.CREDENTIAL)

    def find_by_user_id(self, user_id: str) -> list[Account]:
        return list(
            self.db.scalars(
                select(Account).where(Account.user_id == user_id).order_by(Account.created_at)
            )
        )

    def count_by_user_id(self, user_id: str) -> int:
        return int(
            self.db.scalar(select(func.count(Account.id)).where(Account.user_id == user_id)) or 0
        )

    def create_credential_account(self, user_id: str, password_hash: str) -> Account:
        """The credential account uses the user id as its provider account id."""
        account = Account(
            user_id=user_id,
            provider=AuthProvider.CREDENTIAL.value,
            provider_account_id=user_id,
            password_hash=password_hash,
        )
        self.db.add(account)
        self.db.flush()
        return account

    def create_oauth_account(
        self, user_id: str, provider: AuthProvider, provider_account_id: str
    ) -> Account:
        account = Account(
            user_id=user_id,
            provider=provider.value,
            provider_account_id=provider_account_id,
        )
        self.db.add(account)
        self.db.flush()
        return account

    def update_password(self, account: Account, password_hash: str) -> None:
        account.password_hash = password_hash  # type: ignore[assignment]
        self.db.flush()

    def delete(self, account: Account) -> None:
        self.db.delete(account)
        self.db.flush()
