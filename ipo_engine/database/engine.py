from __future__ import annotations

from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ipo_engine.config import settings

_engine: Optional[Engine] = None

# Module-level factory so components can take it as a default argument;
# init_engine() binds it. Objects stay readable after commit because
# snapshots are built from rows outside the session block.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, future=True, expire_on_commit=False)


def _sqlite_on_connect(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        # time-series rows reference offerings; enforce it
        cursor.execute("PRAGMA foreign_keys=ON;")
        # sync jobs and API handlers share one file
        cursor.execute("PRAGMA busy_timeout=5000;")
    finally:
        cursor.close()


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite:"):
        # API handlers run in a threadpool
        return {"check_same_thread": False}
    # Offering dates are published in IST.
    return {"options": "-c timezone=Asia/Kolkata"}


def init_engine(url: str | None = None) -> None:
    """Create the global Engine and bind SessionLocal.

    Without ``url`` this is a no-op once an engine exists. Passing a URL
    disposes the current engine and rebinds (tests use a temp SQLite file).
    """
    global _engine

    if url is None and _engine is not None:
        return

    target = str(url or settings.DATABASE_URL).strip()
    if _engine is not None:
        _engine.dispose()

    eng = create_engine(target, future=True, pool_pre_ping=True, connect_args=_connect_args(target))
    if target.startswith("sqlite:"):
        event.listen(eng, "connect", _sqlite_on_connect)

    _engine = eng
    SessionLocal.configure(bind=eng)


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def init_schema_check() -> None:
    """``SELECT 1`` against the store, then create any missing tables."""
    eng = get_engine()
    with eng.connect() as conn:
        conn.execute(text("SELECT 1"))

    from ipo_engine.database.models import Base

    Base.metadata.create_all(bind=eng)
