"""
Engine and session factory for the account store.

The reminder jobs and the access dependency both open sessions through
get_db_session_sync; each session is closed when the caller is done with it.
Pool sizing can be tuned per deployment with DATABASE_POOL_SIZE and
DATABASE_MAX_OVERFLOW.
"""

import os
import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10

_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """Read DATABASE_URL, accepting the legacy postgres:// scheme."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine():
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=int(os.getenv("DATABASE_POOL_SIZE", DEFAULT_POOL_SIZE)),
                max_overflow=int(os.getenv("DATABASE_MAX_OVERFLOW", DEFAULT_MAX_OVERFLOW)),
                pool_pre_ping=True,
            )
            logger.info("Account store engine created")
        except ValueError as e:
            logger.error("Failed to create account store engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory bound to the engine."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine()
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the engine and forget the session factory (for tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Yield one session for a job run or a request.

    Raises:
        RuntimeError: DATABASE_URL is not configured
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
