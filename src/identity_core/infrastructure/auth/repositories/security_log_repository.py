"""
Security event log.

Append-only audit sink. Read paths serve operational and forensic queries
only and are never consulted by authorization decisions.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..constants import SecurityEvent
from ..models import SecurityLogEntry

logger = logging.getLogger(__name__)


class SecurityLogRepository:
    """Persistence for ``SecurityLogEntry`` rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def create(
        self,
        event: SecurityEvent,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SecurityLogEntry:
        entry = SecurityLogEntry(
            user_id=user_id,
            event=event.value,
            ip_address=ip_address,
            user_agent=user_agent,
            details=metadata,
        )
        self.db.add(entry)
        self.db.flush()

        if event is SecurityEvent.SUSPICIOUS_ACTIVITY:
            logger.warning(f"Security event {event.value} for user {user_id}: {metadata}")
        else:
            logger.info(f"Security event {event.value} for user {user_id}")
        return entry

    def find_by_user(self, user_id: str, limit: int = 50) -> list[SecurityLogEntry]:
        return list(
            self.db.scalars(
                select(SecurityLogEntry)
                .where(SecurityLogEntry.user_id == user_id)
                .order_by(SecurityLogEntry.created_at.desc())
                .limit(limit)
            )
        )

    def find_by_ip(
        self, ip_address: str, since: datetime | None = None, limit: int = 100
    ) -> list[SecurityLogEntry]:
        query = select(SecurityLogEntry).where(SecurityLogEntry.ip_address == ip_address)
        if since is not None:
            query = query.where(SecurityLogEntry.created_at >= since)
        return list(
            self.db.scalars(query.order_by(SecurityLogEntry.created_at.desc()).limit(limit))
        )

    def find_by_time_window(
        self, start: datetime, end: datetime, event: SecurityEvent | None = None
    ) -> list[SecurityLogEntry]:
        query = select(SecurityLogEntry).where(
            SecurityLogEntry.created_at >= start, SecurityLogEntry.created_at < end
        )
        if event is not None:
            query = query.where(SecurityLogEntry.event == event.value)
        return list(self.db.scalars(query.order_by(SecurityLogEntry.created_at)))

    def count_by_event(self, event: SecurityEvent, since: datetime) -> int:
        return int(
            self.db.scalar(
                select(func.count(SecurityLogEntry.id)).where(
                    SecurityLogEntry.event == event.value,
                    SecurityLogEntry.created_at >= since,
                )
            )
            or 0
        )

    def delete_older_than(self, cutoff: datetime) -> int:
        """Retention cleanup; the only way entries ever leave the log."""
        result = self.db.execute(
            delete(SecurityLogEntry)
            .where(SecurityLogEntry.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount)
