"""
Database connection and setup
SQLAlchemy engine and session factory for the durable cache
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.models import Base
from config.settings import settings

logger = logging.getLogger("db")


def make_engine(database_url: Optional[str] = None):
    """
    Create an engine for the given URL (defaults to settings.database_url).
    SQLite connections are shared with worker threads, so same-thread checks are off.
    """
    url = database_url or settings.database_url
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Needed for SQLite
    return create_engine(url, connect_args=connect_args, echo=False)


def make_session_factory(engine):
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine):
    """
    Initialize database - create all tables
    Safe to call multiple times (won't recreate existing tables)
    """
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {engine.url}")
