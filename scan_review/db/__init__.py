"""
Database Package - SQLAlchemy
=============================

Single-table persistence for the application state.
"""

from .models import Base, StateEntry
from .session import get_db_session, init_db, get_engine, reset_engines

__all__ = [
    "Base",
    "StateEntry",
    "get_db_session",
    "init_db",
    "get_engine",
    "reset_engines",
]
