"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory used by the sync
    services, the ARQ worker and the FastAPI trigger router.

WHY:
    - Sync services run in worker threads, each with its own session
      (`SessionLocal()`), so only a synchronous engine is needed.
    - FastAPI endpoints get a request-scoped session via `get_db()`.

USAGE:
    from adsync.database import SessionLocal, get_db

    db = SessionLocal()
    try:
        accounts = db.query(Account).all()
    finally:
        db.close()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - adsync/services/dispatch_service.py (one session per account task)
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from adsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Pool sizing covers ACCOUNT_SYNC_CONCURRENCY worker sessions plus API traffic.
# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

