"""Engine and session helpers.

``DATABASE_URL`` selects the backend.  PostgreSQL is used as-is (Railway
style ``postgres://`` URLs are rewritten); anything else falls back to a
SQLite file named ``queue.db`` located in the same directory as this module.

SQLite has no ``SELECT ... FOR UPDATE``.  Write transactions started through
:func:`begin_write` are opened with ``BEGIN IMMEDIATE``, which takes the
database write lock up front and makes the read-then-write units in
``services`` serial; other writers wait up to ``SQLITE_BUSY_TIMEOUT``
seconds.  Plain reads use a deferred ``BEGIN`` and, with the file database
in WAL mode, never hold up a writer.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401  registers the tables on SQLModel.metadata

logger = logging.getLogger(__name__)

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

# Execution option marking a connection whose transaction will write.
WRITE_INTENT = "queue_write_intent"

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def normalize_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def _install_sqlite_locking(engine: Engine, use_wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's deferred one.
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys = ON")
        if use_wal:
            dbapi_connection.execute("PRAGMA journal_mode = WAL")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_INTENT):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def begin_write(session: Session) -> None:
    """Start a write transaction on ``session``.

    A read transaction left open by earlier queries is committed first, so
    the write sees current data and SQLite takes the write lock at BEGIN.
    """
    if session.in_transaction():
        session.commit()
    session.connection(execution_options={WRITE_INTENT: True})


def create_db_engine(
    url: Optional[str] = None, echo: bool = False, busy_timeout: Optional[float] = None
) -> Engine:
    """Build an engine for ``url`` (defaults to ``DATABASE_URL``)."""
    url = normalize_url(url or DATABASE_URL)
    if url.startswith("sqlite"):
        timeout = SQLITE_BUSY_TIMEOUT if busy_timeout is None else busy_timeout
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        if _is_memory_url(url):
            # One shared connection, otherwise every checkout sees an empty database.
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        _install_sqlite_locking(engine, use_wal=not _is_memory_url(url))
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)
    return engine


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


def get_engine() -> Engine:
    """Return the process-wide engine, creating and initialising it once."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                engine = create_db_engine()
                init_db(engine)
                _engine = engine
                logger.info("Database ready (%s)", engine.url.get_backend_name())
    return _engine


def get_session() -> Iterator[Session]:
    """FastAPI dependency yielding one session per request."""
    with Session(get_engine(), expire_on_commit=False) as session:
        yield session
