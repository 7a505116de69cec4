"""
SQLAlchemy Models for Database
==============================

The application state is persisted as one JSON document per namespace.
Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

from datetime import datetime
from sqlalchemy import Column, String, Text, Integer, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class StateEntry(Base):
    """Whole application state under one namespace key"""
    __tablename__ = "app_state"

    namespace = Column(String(128), primary_key=True)
    payload = Column(Text, nullable=False)
    revision = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
