"""
Outbound email capability.

Delivery itself is external. The auth core only needs ``send(address, code)``
with the purpose of the code so the sender can choose a template.
"""

import logging
from typing import Protocol

from .constants import VerificationPurpose

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    """Sends a one-time code to an email address."""

    async def send(self, address: str, code: str, purpose: VerificationPurpose) -> None: ...


class LoggingEmailSender:
    """Development sender that logs instead of delivering."""

    async def send(self, address: str, code: str, purpose: VerificationPurpose) -> None:
        # The code itself is never logged
        logger.info(f"Email delivery skipped: {purpose.value} code for {address}")
