"""Database connection and session management using SQLModel."""

from __future__ import annotations

from typing import Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from .config import DATA_DIR

DB_PATH = DATA_DIR / "tracker.db"
SQLITE_URL = f"sqlite:///{DB_PATH}"
BUSY_TIMEOUT_SECONDS = 30


def build_engine(url: str) -> Engine:
    """Create a SQLite engine shared by worker threads.

    check_same_thread=False lets the pool hand connections to any worker;
    each job still opens its own Session.
    """
    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(new_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_SECONDS * 1000};")
        cursor.close()

    return new_engine


engine = build_engine(SQLITE_URL)


def get_session() -> Generator[Session, None, None]:
    """Dependency for FastAPI or context manager for scripts."""
    with Session(get_engine()) as session:
        yield session


def init_db() -> None:
    """Create database tables."""
    # Import models to ensure they are registered with SQLModel.metadata
    from . import models  # noqa: F401

    current = get_engine()
    if current.url.database and current.url.database != ":memory:":
        with current.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL;")

    SQLModel.metadata.create_all(current)


def get_engine() -> Engine:
    """Return the global engine instance."""
    return engine
