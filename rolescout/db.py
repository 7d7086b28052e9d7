from __future__ import annotations

import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Callable, ContextManager, Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rolescout.config import get_settings
from rolescout.models import Base

SessionFactory = Callable[[], Session]

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None

# SQLite allows a single writer; gate+upsert units are serialized through this.
_sqlite_write_lock = threading.RLock()


def init_db(db_url: str | None = None) -> Engine:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = db_url or get_settings().resolved_database_url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            db_path = url.removeprefix("sqlite:///")
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
        return _engine


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in databases created by older CRM syncs."""
    inspector = sa_inspect(engine)
    if not inspector.has_table("deal_contacts"):
        return
    columns = {col["name"] for col in inspector.get_columns("deal_contacts")}
    additions = {
        "role": "VARCHAR(200)",
        "seniority_verified": "VARCHAR(50)",
        "department_verified": "VARCHAR(50)",
        "enrichment_status": "VARCHAR(30)",
    }
    for name, ddl in additions.items():
        if name not in columns:
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE deal_contacts ADD COLUMN {name} {ddl}"))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, MCP server, worker threads)::

        with session_scope() as session:
            ...
    """
    session = (factory or get_session)()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def write_guard(session: Session) -> ContextManager[object]:
    """Serialize a write unit when the session is bound to SQLite, no-op otherwise."""
    if session.get_bind().dialect.name == "sqlite":
        return _sqlite_write_lock
    return nullcontext()
