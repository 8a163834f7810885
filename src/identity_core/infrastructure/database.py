"""
Database engine and transaction management.

Provides the SQLAlchemy engine/session factory and the transaction scope
every auth operation runs in.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig

logger = logging.getLogger(__name__)


def create_database_engine(config: DatabaseConfig) -> Engine:
    """
    Create a SQLAlchemy engine from configuration.

    In-memory SQLite URLs share one connection across threads so that a
    single process sees one database.

    Args:
        config: Database configuration

    Returns:
        Configured engine
    """
    if config.url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in config.url:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(config.url, echo=config.echo, **kwargs)
    else:
        engine = create_engine(
            config.url, echo=config.echo, pool_size=config.pool_size, pool_pre_ping=True
        )

    logger.info(f"Database engine created for dialect {engine.dialect.name}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to the engine."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one atomic unit of work.

    Commits when the block completes and rolls back when it raises, so a
    failed multi-step write never leaves partial rows behind.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
