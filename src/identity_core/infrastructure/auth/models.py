"""
Database models for identity, sessions and auth audit trails.

This module defines SQLAlchemy models for users, provider accounts,
refresh-token sessions, one-time verification codes, login attempts,
the security event log, pending browser-redirect logins and OAuth
exchange codes.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import INET
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import String as SQLString
from sqlalchemy.types import TypeDecorator

from ..time import utc_now
from .constants import UserStatus


class IPAddress(TypeDecorator[str]):
    """Database-agnostic IP address field."""

    impl = SQLString
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(INET())
        else:
            return dialect.type_descriptor(SQLString(45))  # IPv6 max length


Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class User(Base):  # type: ignore[valid-type, misc]
    """Identity row. Never hard-deleted by the auth core."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=UserStatus.PENDING_VERIFY.value)
    email_verified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")
    profile = relationship("UserProfile", back_populates="user", uselist=False)
    consent = relationship("UserConsent", back_populates="user", uselist=False)

    @property
    def is_email_verified(self) -> bool:
        return self.email_verified_at is not None

    def mark_verified(self) -> None:
        """Mark the email verified and activate a pending user."""
        self.email_verified_at = utc_now()  # type: ignore[assignment]
        if self.status == UserStatus.PENDING_VERIFY.value:
            self.status = UserStatus.ACTIVE.value  # type: ignore[assignment]


class Account(Base):  # type: ignore[valid-type, misc]
    """One login method of a user: the credential account or a linked provider."""

    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(20), nullable=False)
    provider_account_id = Column(String(255), nullable=False)
    password_hash = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    user = relationship("User", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("provider", "provider_account_id", name="uq_account_provider_identity"),
        UniqueConstraint("user_id", "provider", name="uq_account_user_provider"),
        Index("idx_accounts_user", "user_id"),
    )


class UserProfile(Base):  # type: ignore[valid-type, misc]
    """Display profile created alongside the user."""

    __tablename__ = "user_profiles"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    name = Column(String(100), nullable=True)
    profile_image = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    user = relationship("User", back_populates="profile")


class UserConsent(Base):  # type: ignore[valid-type, misc]
    """Terms, privacy and marketing agreement timestamps."""

    __tablename__ = "user_consents"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    terms_agreed_at = Column(DateTime, nullable=True)
    privacy_agreed_at = Column(DateTime, nullable=True)
    marketing_agreed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)

    user = relationship("User", back_populates="consent")


class UserSession(Base):  # type: ignore[valid-type, misc]
    """
    One logical device login.

    A revoked session is terminal, token_version only increases and
    previous_token_hash is overwritten on every rotation.
    """

    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    token_family = Column(String(64), nullable=False, index=True)
    token_version = Column(Integer, nullable=False, default=1)
    refresh_token_hash = Column(String(128), unique=True, nullable=False)
    previous_token_hash = Column(String(128), nullable=True, index=True)

    device_fingerprint = Column(String(64), nullable=True)
    ip_address = Column(IPAddress, nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    expires_at = Column(DateTime, nullable=False)
    last_used_at = Column(DateTime, default=utc_now)
    revoked_at = Column(DateTime, nullable=True)
    revoked_reason = Column(String(50), nullable=True)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("idx_sessions_user", "user_id"),
        Index("idx_sessions_expires", "expires_at"),
    )

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return bool(self.expires_at <= (now or utc_now()))

    def is_active(self) -> bool:
        """Check if session is neither revoked nor expired."""
        return not self.is_revoked() and not self.is_expired()


class VerificationCode(Base):  # type: ignore[valid-type, misc]
    """Hashed one-time code for email verification or password reset."""

    __tablename__ = "verification_codes"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    purpose = Column(String(20), nullable=False)
    code_hash = Column(String(64), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utc_now)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    invalidated_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_verification_user_purpose", "user_id", "purpose"),)


class LoginAttempt(Base):  # type: ignore[valid-type, misc]
    """Immutable record of one login attempt."""

    __tablename__ = "login_attempts"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=True, index=True)
    provider = Column(String(20), nullable=False)
    ip_address = Column(IPAddress, nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utc_now, index=True)


class SecurityLogEntry(Base):  # type: ignore[valid-type, misc]
    """Append-only audit record of a sensitive transition."""

    __tablename__ = "security_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    event = Column(String(50), nullable=False, index=True)
    ip_address = Column(IPAddress, nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utc_now, index=True)

    __table_args__ = (Index("idx_security_logs_user_time", "user_id", "created_at"),)


class OAuthExchangeCode(Base):  # type: ignore[valid-type, misc]
    """Single-use handoff of freshly issued tokens after a browser redirect."""

    __tablename__ = "oauth_exchange_codes"

    id = Column(String(36), primary_key=True, default=_uuid)
    code_hash = Column(String(64), unique=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    encrypted_payload = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utc_now)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)


class OAuthState(Base):  # type: ignore[valid-type, misc]
    """Pending browser-redirect login, consumed by the provider callback."""

    __tablename__ = "oauth_states"

    id = Column(String(36), primary_key=True, default=_uuid)
    state_hash = Column(String(64), unique=True, nullable=False)
    provider = Column(String(20), nullable=False)
    redirect_uri = Column(String(500), nullable=False)
    code_verifier = Column(String(128), nullable=True)
    ip_address = Column(IPAddress, nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    expires_at = Column(DateTime, nullable=False, index=True)
    consumed_at = Column(DateTime, nullable=True)
