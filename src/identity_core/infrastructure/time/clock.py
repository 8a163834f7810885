"""
UTC clock used for every persisted timestamp.

Timestamps are stored as naive UTC so comparisons behave the same on
PostgreSQL and SQLite.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)
