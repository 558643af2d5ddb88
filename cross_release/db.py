"""Cache index storage.

The index only records where each dependency cache lives; build results
and packaged artifacts last for one run and are never stored. Legs write
to the index from worker threads, so SQLite connections are opened
thread-agnostic, wait on a busy database instead of failing, and use WAL
so readers never block the single writer.
"""

from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cross_release.config import get_settings

# Milliseconds a connection waits for another leg's write to finish
SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    """Base class for cache index models."""


def _configure_sqlite(dbapi_connection: Any, connection_record: Any, in_memory: bool) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create the engine for the cache index.

    An in-memory SQLite index is shared by every thread through a single
    connection; a file-backed index gets its parent directory created.

    Args:
        db_url: Database URL (defaults to settings.db_url).

    Returns:
        SQLAlchemy Engine.
    """
    url = make_url(db_url or get_settings().db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url)

    in_memory = url.database in (None, "", ":memory:")
    if in_memory:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, connect_args={"check_same_thread": False})

    event.listen(
        engine,
        "connect",
        lambda conn, record: _configure_sqlite(conn, record, in_memory),
    )
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory whose objects stay usable after commit."""
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the cache index tables if they do not exist."""
    # Register models with the mapper before creating tables
    from cross_release.builds import models as builds_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


__all__ = [
    "SQLITE_BUSY_TIMEOUT_MS",
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session_factory",
]
