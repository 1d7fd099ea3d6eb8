"""Database session and base configuration.

WHAT:
    Provides the sync SQLAlchemy engine and session factory, plus the FastAPI
    dependency used to obtain request sessions.

WHY:
    - Request handlers use one short session per request (`get_db`).
    - Detached dispatch tasks and arq jobs cannot use FastAPI dependency
      injection, so they open their own short sessions from `SessionLocal`
      (or any factory injected into the Dispatcher).

ARCHITECTURE:
    ┌──────────────────┐
    │  Sync Engine     │
    │  (psycopg2)      │
    └────────┬─────────┘
             │
    ┌────────▼─────────┐
    │  SessionLocal    │──── Dispatcher / arq jobs
    └────────┬─────────┘
             │
    ┌────────▼─────────┐
    │  get_db()        │
    │  (request dep)   │
    └──────────────────┘

REFERENCES:
    - leadflow/routers/ (consumers of request sessions)
    - leadflow/services/dispatcher.py (task-scoped sessions)
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

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from leadflow.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku-style URLs are rejected by SQLAlchemy 2
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
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
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in leadflow.models to ensure a single registry across the app
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Example:
        @router.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

