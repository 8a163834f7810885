"""
OAuth exchange codes.

After a browser-redirect login the issued tokens are parked behind a short
lived, single-use code so they never appear in a URL. Only the SHA-256 of
the code is stored and the tokens are encrypted at rest with Fernet.
"""

import hashlib
import json
import logging
import secrets
from datetime import timedelta

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from ....domain.exceptions import ErrorCode, UnauthorizedError
from ...time import utc_now
from ..models import OAuthExchangeCode
from ..types import AuthResult

logger = logging.getLogger(__name__)

EXCHANGE_CODE_BYTES = 32


class ExchangeCodeService:
    """Issues and redeems single-use exchange codes."""

    def __init__(
        self,
        db_session: Session,
        encryption_key: str | None = None,
        ttl_seconds: int = 600,
        environment: str = "development",
    ):
        self.db = db_session
        self.ttl = timedelta(seconds=ttl_seconds)

        if encryption_key:
            self._fernet = Fernet(encryption_key.encode("utf-8"))
        elif environment == "production":
            raise ValueError(
                "EXCHANGE_CODE_ENCRYPTION_KEY is required for production. "
                "Generate one with Fernet.generate_key()"
            )
        else:
            logger.warning(
                "No exchange code key configured - using an ephemeral key for DEVELOPMENT ONLY. "
                "Outstanding codes will not survive a restart!"
            )
            self._fernet = Fernet(Fernet.generate_key())

    @staticmethod
    def hash_code(code: str) -> str:
        return hashlib.sha256(code.encode("utf-8")).hexdigest()

    def create(self, result: AuthResult) -> str:
        """
        Park an authentication result behind a new code.

        Runs inside the caller's transaction.

        Args:
            result: Freshly issued authentication result

        Returns:
            The plain exchange code, returned exactly once
        """
        code = secrets.token_urlsafe(EXCHANGE_CODE_BYTES)
        payload = json.dumps(
            {
                "user_id": result.user_id,
                "session_id": result.session_id,
                "access_token": result.access_token,
                "refresh_token": result.refresh_token,
                "expires_in": result.expires_in,
                "token_type": result.token_type,
                "is_new_user": result.is_new_user,
            }
        )
        self.db.add(
            OAuthExchangeCode(
                code_hash=self.hash_code(code),
                user_id=result.user_id,
                encrypted_payload=self._fernet.encrypt(payload.encode("utf-8")).decode("ascii"),
                expires_at=utc_now() + self.ttl,
            )
        )
        self.db.flush()

        logger.debug(f"Exchange code issued for user {result.user_id}")
        return code

    def redeem(self, code: str) -> AuthResult:
        """
        Consume a code and return the tokens it holds.

        Raises:
            UnauthorizedError: If the code is unknown, expired or already used
        """
        now = utc_now()
        record = self.db.scalars(
            select(OAuthExchangeCode).where(OAuthExchangeCode.code_hash == self.hash_code(code))
        ).first()
        if record is None or record.consumed_at is not None or record.expires_at <= now:
            raise UnauthorizedError(ErrorCode.EXCHANGE_CODE_INVALID, "Invalid or expired code")

        consumed = self.db.execute(
            update(OAuthExchangeCode)
            .where(OAuthExchangeCode.id == record.id, OAuthExchangeCode.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not consumed.rowcount:
            logger.warning(f"Exchange code for user {record.user_id} redeemed concurrently")
            raise UnauthorizedError(ErrorCode.EXCHANGE_CODE_INVALID, "Invalid or expired code")

        try:
            data = json.loads(self._fernet.decrypt(str(record.encrypted_payload).encode("ascii")))
        except InvalidToken:
            logger.error(f"Exchange code payload for user {record.user_id} cannot be decrypted")
            raise UnauthorizedError(ErrorCode.EXCHANGE_CODE_INVALID, "Invalid or expired code")

        return AuthResult(**data)

    def delete_expired(self) -> int:
        """Remove expired and consumed codes."""
        result = self.db.execute(
            delete(OAuthExchangeCode).where(
                or_(
                    OAuthExchangeCode.expires_at < utc_now(),
                    OAuthExchangeCode.consumed_at.is_not(None),
                )
            )
        )
        return int(result.rowcount or 0)
