"""SQLAlchemy base, id generation, and SQLite pragmas."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase

DEFAULT_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def new_id() -> str:
    """Primary keys are UUID4 strings (the card id is printed on the QR code)."""
    return str(uuid4())


def make_sqlite_pragma_listener(busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> Any:
    """Build a connect listener that sets SQLite pragmas.

    SQLite pragmas are per-connection, not per-database, so they must be
    set on every new connection.
    """

    def set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return set_sqlite_pragmas


def register_engine_events(
    engine: Engine,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
) -> None:
    """Register the SQLite pragma listener on a (sync) engine.

    For an AsyncEngine pass ``async_engine.sync_engine``.
    """
    event.listen(engine, "connect", make_sqlite_pragma_listener(busy_timeout_ms))
