"""SQLite engine and session handling for the evaluation store.

``init_db`` binds one process-wide engine; services receive sessions and
commit themselves, so the helpers here only guarantee rollback and close.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from bizval.config import get_settings
from bizval.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _enable_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine with FK enforcement and the evaluation schema in place."""
    engine = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)
    event.listen(engine, "connect", _enable_foreign_keys)
    Base.metadata.create_all(engine)
    return engine


def init_db(db_path: str | Path | None = None) -> Path:
    """Open (creating if needed) the evaluation database; returns its path."""
    global _engine, _SessionLocal
    path = Path(db_path) if db_path is not None else get_settings().database_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        path.parent.mkdir(parents=True, exist_ok=True)
        _engine = build_engine(f"sqlite:///{path}")
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    log.debug("Evaluation store at %s", path)
    return path


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


def _guarded(session: Session) -> Generator[Session, None, None]:
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """``with session_scope() as session:`` for the CLI."""
    yield from _guarded(get_session())


def session_generator() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI ``Depends()``."""
    yield from _guarded(get_session())
