from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any, TypeVar

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

T = TypeVar("T")

ENGINE_KEY = "sqlalchemy_engine"
SESSIONMAKER_KEY = "sqlalchemy_sessionmaker"


def build_engine(db_url: str, *, pooled: bool = True) -> Engine:
    """
    Engine for either backend. Postgres gets a bounded pool when `pooled`
    (web workers); one-shot scripts pass pooled=False. SQLite connections
    always have foreign keys switched on.
    """
    kwargs: dict[str, Any] = {"future": True}
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _sqlite_fk_pragma(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return engine

    kwargs.update(pool_pre_ping=True, pool_recycle=1800)
    if pooled:
        kwargs.update(pool_size=5, max_overflow=10, pool_timeout=30)
    return create_engine(db_url, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions[ENGINE_KEY] = engine
    app.extensions[SESSIONMAKER_KEY] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """Session bound to the current request; created on first use, closed on teardown."""
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        s = (app or current_app).extensions[SESSIONMAKER_KEY]()
        g.db_session = s
    return s


def teardown_db_session(exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    if exc is not None:
        s.rollback()
    s.close()


@contextmanager
def _committing(s: Session) -> Generator[Session, None, None]:
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def session_scope(app: Flask):
    """Session for CLI jobs and tests: commits on success, rolls back on error."""
    return _committing(app.extensions[SESSIONMAKER_KEY]())


@contextmanager
def engine_session(db_url: str) -> Generator[Session, None, None]:
    """Like session_scope() but without an app; the engine is disposed afterwards."""
    engine = build_engine(db_url, pooled=False)
    try:
        with _committing(make_sessionmaker(engine)()) as s:
            yield s
    finally:
        engine.dispose()


def get_or_404(s: Session, model: type[T], ident: Any, code: str = "not_found") -> T:
    """Primary-key lookup that raises NotFoundError instead of returning None."""
    from app.procurement.errors import NotFoundError

    obj = s.get(model, ident)
    if obj is None:
        raise NotFoundError(code)
    return obj


def next_sequential_code(s: Session, column: Any, prefix: str, width: int = 5) -> str:
    """Next "<prefix>-NNNNN" code after the highest numeric suffix already stored."""
    highest = 0
    for (code,) in s.query(column).filter(column.like(f"{prefix}-%")).all():
        tail = (code or "")[len(prefix) + 1:]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return f"{prefix}-{highest + 1:0{width}d}"
