"""
Database Configuration Module
=============================

SQLAlchemy engine and session management for the access control store.
A ``Database`` is constructed explicitly and handed to the services that
need it; nothing connects at import time.

SQLite is the default for portability. In-memory SQLite URLs share one
connection (StaticPool) so every session and thread sees the same data;
sessions on that connection are serialized by a per-database lock so one
thread's commit or rollback never lands on another thread's work.
"""

import threading
from contextlib import contextmanager, nullcontext
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# Base class for declarative models
Base = declarative_base()


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in url)


class Database:
    """
    Owns one SQLAlchemy engine and its session factory.

    Args:
        url: SQLAlchemy database URL
        timeout: Seconds a connection waits on a locked database before
            failing (SQLite busy timeout)
        echo: Log emitted SQL
    """

    def __init__(self, url: str, timeout: Optional[float] = None, echo: bool = False):
        self.url = url
        self._session_lock = None
        engine_kwargs = {"echo": echo}

        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}  # Required for SQLite
            if timeout is not None:
                connect_args["timeout"] = timeout
            engine_kwargs["connect_args"] = connect_args
            if _is_memory_sqlite(url):
                engine_kwargs["poolclass"] = StaticPool
                self._session_lock = threading.RLock()
        elif timeout is not None:
            engine_kwargs["pool_timeout"] = timeout

        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

    @contextmanager
    def get_session(self):
        """
        Context manager for database sessions.

        Commits on success and rolls back on failure.
        On an in-memory database the whole session holds the connection lock.

        Usage:
            with database.get_session() as session:
                user = session.get(UserRecord, "u1")
        """
        with self._session_lock or nullcontext():
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def init_db(self):
        """
        Initialize the database schema.

        Creates all tables defined in the models if they don't exist.
        Safe to call multiple times.
        """
        from . import entities  # noqa: F401 - Ensure models are loaded
        with self._session_lock or nullcontext():
            Base.metadata.create_all(bind=self.engine)

    def reset_db(self):
        """
        Reset the database by dropping and recreating all tables.

        WARNING: This destroys all data. Use only for development/testing.
        """
        from . import entities  # noqa: F401
        with self._session_lock or nullcontext():
            Base.metadata.drop_all(bind=self.engine)
            Base.metadata.create_all(bind=self.engine)

    def dispose(self):
        """Release pooled connections."""
        self.engine.dispose()
