from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from recordshift.core.config import get_settings

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _is_memory_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.drivername.startswith("sqlite") and parsed.database in {None, "", ":memory:"}


def _install_sqlite_pragmas(engine: Engine) -> None:
    # Item workers append failures from several threads at once.
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.close()


def get_engine() -> Engine:
    """Engine for the failure log database, created on first use."""
    global _engine
    if _engine is not None:
        return _engine

    url = get_settings().effective_database_url
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        _engine = create_engine(url, pool_pre_ping=True)
        return _engine

    if _is_memory_sqlite(url):
        _engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        return _engine

    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    _engine = create_engine(url, pool_pre_ping=True, connect_args={"check_same_thread": False})
    _install_sqlite_pragmas(_engine)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _session_factory


def reset_engine() -> None:
    """Drop the cached engine so the next call picks up fresh settings."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
