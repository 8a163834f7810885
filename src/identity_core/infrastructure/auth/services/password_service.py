"""
Password management service.

Handles memory-hard password hashing, verification, policy validation
and rehash detection.
"""

import logging
import re

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from ...config import AuthConfig

logger = logging.getLogger(__name__)


class PasswordHasher:
    """Argon2id password hashing utility."""

    def __init__(
        self,
        memory_cost: int = 65536,
        time_cost: int = 3,
        parallelism: int = 4,
        hash_length: int = 32,
    ) -> None:
        """Initialize with Argon2id cost parameters (memory in KiB)."""
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_length,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        """Hash a password using Argon2id."""
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        """Verify a password against its hash. Malformed hashes yield False."""
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as e:
            logger.error(f"Password verification failed: {e}")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """Check if the hash was produced with outdated cost parameters."""
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHashError, ValueError):
            return True


class PasswordValidator:
    """Password policy validator."""

    MIN_LENGTH = 8
    MAX_LENGTH = 72

    ALLOWED_CHARACTERS = re.compile(r"^[A-Za-z\d@$!%*#?&]+$")

    @classmethod
    def validate(cls, password: str) -> tuple[bool, list[str]]:
        """
        Validate password against the policy.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []

        # Length check
        if len(password) < cls.MIN_LENGTH:
            errors.append(f"Password must be at least {cls.MIN_LENGTH} characters long")
        if len(password) > cls.MAX_LENGTH:
            errors.append(f"Password must not exceed {cls.MAX_LENGTH} characters")

        # Composition checks
        if not re.search(r"[A-Za-z]", password):
            errors.append("Password must contain at least one letter")
        if not re.search(r"\d", password):
            errors.append("Password must contain at least one number")
        if password and not cls.ALLOWED_CHARACTERS.match(password):
            errors.append("Password may only contain letters, numbers and @$!%*#?&")

        return len(errors) == 0, errors


class PasswordService:
    """Password management service."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self.hasher = hasher or PasswordHasher()
        self.validator = PasswordValidator()

    @classmethod
    def from_config(cls, config: AuthConfig) -> "PasswordService":
        """Build the service with the cost parameters of an ``AuthConfig``."""
        return cls(
            PasswordHasher(
                memory_cost=config.argon2_memory_cost,
                time_cost=config.argon2_time_cost,
                parallelism=config.argon2_parallelism,
                hash_length=config.argon2_hash_length,
            )
        )

    def hash_password(self, password: str) -> str:
        """Hash a password."""
        return self.hasher.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        """Verify a password against its hash."""
        return self.hasher.verify(password_hash, password)

    def validate_password(self, password: str) -> tuple[bool, list[str]]:
        """Validate password policy."""
        return self.validator.validate(password)

    def needs_rehash(self, password_hash: str) -> bool:
        """Check if password needs rehashing."""
        return self.hasher.needs_rehash(password_hash)

    def rehash_if_needed(self, password: str, password_hash: str) -> str | None:
        """Rehash password if needed and password is correct."""
        if self.needs_rehash(password_hash) and self.verify_password(password, password_hash):
            return self.hash_password(password)
        return None
