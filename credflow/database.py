"""
Database connection and session management for CREDFLOW.

Provides:
- engine: SQLAlchemy engine instance
- SessionLocal: Factory for creating database sessions
- get_db(): Context manager for DB sessions (workers, scripts)
- get_db_session(): Plain session (FastAPI dependency wraps it)
- init_db(): Create all tables (local development, tests)
"""

import os
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    DATABASE_URL = "sqlite:///./credflow.db"
    logger.warning("DATABASE_URL not set, using local SQLite database (credflow.db)")

if DATABASE_URL.startswith("postgres://"):
    # Managed Postgres providers hand out postgres:// URLs; SQLAlchemy wants postgresql://
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# pool_pre_ping=True ensures connections are valid before using them
engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args=connect_args,
    echo=False
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db() as db:
            worker = QueueWorker(db, settings)
            ...

    The session is rolled back if an exception escapes and always closed.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db_session() -> Session:
    """
    Get a new database session (without context manager).

    Note: You must manually close the session after use.
    """
    return SessionLocal()


def init_db() -> None:
    """Create every table known to the models' metadata."""
    from .models import Base

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema created")
