"""
Database session helpers shared by the effects API, worker and CLI.

The engine is built lazily from settings so importing this module never
opens a connection.
"""

import functools
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from basecore.settings import get_settings


@functools.lru_cache()
def get_engine():
    """Get SQLAlchemy engine (cached)."""
    settings = get_settings()
    url = make_url(settings.DATABASE_URL)

    if url.get_backend_name() == "sqlite":
        # Sessions are handed across the worker's handler threads
        return create_engine(
            url, connect_args={"check_same_thread": False}, echo=settings.DB_ECHO
        )

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        echo=settings.DB_ECHO,
    )


@functools.lru_cache()
def get_sessionmaker():
    """Get SQLAlchemy sessionmaker (cached)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db():
    """FastAPI dependency: yield a session and close it afterwards."""
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Session for scripts and CLI commands.

    Rolls back on error. Repository writes commit on their own, so nothing
    is committed here.
    """
    db = get_sessionmaker()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
