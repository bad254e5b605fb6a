"""
Database configuration and session management.

The gateway reads and writes a tiny slice of the user store (presence flag
and accepted friendships), so the engine is created lazily on first use.
"""

import os
import threading
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker, Session

from shared.config.settings import settings

_engine: Engine | None = None
_session_factory: sessionmaker | None = None
_init_lock = threading.Lock()


def _calculate_pool_size() -> int:
    """(2 * CPU cores) + 1, capped at 10. Presence writes are short and rare."""
    cores = os.cpu_count() or 4
    return min(cores * 2 + 1, 10)


def get_engine() -> Engine:
    """Get or create the shared engine."""
    global _engine
    if _engine is None:
        with _init_lock:
            if _engine is None:
                _engine = create_engine(
                    settings.database_url,
                    pool_pre_ping=True,  # Verify connections before using
                    pool_size=_calculate_pool_size(),
                    max_overflow=5,
                    pool_timeout=30,
                    pool_recycle=1800,
                    echo=False,
                )
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory bound to the shared engine."""
    global _session_factory
    if _session_factory is None:
        factory = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
        with _init_lock:
            if _session_factory is None:
                _session_factory = factory
    return _session_factory


@contextmanager
def get_db_context(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            db.execute(select(users_table))
    """
    db = (factory or get_session_factory())()
    try:
        yield db
    finally:
        db.close()
