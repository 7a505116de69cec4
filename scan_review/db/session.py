"""
Database Session Management
===========================

Engine and session handling with SQLAlchemy.
One engine per database URL, created lazily.
"""

import os
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .models import Base

_engines: Dict[str, Engine] = {}


def current_database_url() -> str:
    # Default to SQLite for development/testing, use DATABASE_URL for production
    return os.environ.get("DATABASE_URL", "sqlite:///./scan_review.db")


def _create_engine_for_url(database_url: str) -> Engine:
    echo = os.environ.get("SQL_ECHO", "false").lower() == "true"

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=echo,
    )


def get_engine(database_url: Optional[str] = None) -> Engine:
    """Get (or create) the engine for `database_url` (DATABASE_URL when None)"""
    database_url = database_url or current_database_url()
    engine = _engines.get(database_url)
    if engine is None:
        engine = _create_engine_for_url(database_url)
        _engines[database_url] = engine
    return engine


def reset_engines():
    """Dispose all engines (primarily for tests)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


def init_db(database_url: Optional[str] = None) -> Engine:
    """Initialize database tables"""
    engine = get_engine(database_url)
    Base.metadata.create_all(bind=engine)
    return engine


@contextmanager
def get_db_session(database_url: Optional[str] = None) -> Generator[Session, None, None]:
    """
    Context manager for database session.

    Usage:
        with get_db_session() as db:
            db.get(StateEntry, "namespace")
    """
    factory = sessionmaker(bind=get_engine(database_url), autocommit=False, autoflush=False)
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
