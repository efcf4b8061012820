"""Engine and session plumbing shared by the web app, the maintenance scripts and tests.

Sessions never autoflush and keep attribute values after commit, so handlers can
serialize rows they just committed without another round trip.
"""

from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

_POSTGRES_POOL = {"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # ON DELETE CASCADE / SET NULL are ignored by SQLite without this pragma.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(db_url: str) -> Engine:
    options: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        options.update(_POSTGRES_POOL)
    engine = create_engine(db_url, **options)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


@contextmanager
def _unit_of_work(factory: sessionmaker) -> Generator[Session, None, None]:
    s: Session = factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = session_factory(engine)


def db_session(app: Flask | None = None) -> Session:
    """Session bound to the current request; created on first use, closed on teardown."""
    s: Session | None = g.get("db_session")
    if s is None:
        factory = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = g.db_session = factory()
    return s


def teardown_db_session(exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    if exc is not None:
        s.rollback()
    s.close()


def session_scope(app: Flask):
    """Commit-or-rollback session outside a request, bound to the app's engine."""
    return _unit_of_work(app.extensions["sqlalchemy_sessionmaker"])


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """Like session_scope, for scripts that run without building the Flask app.

    The engine lives only as long as the block.
    """
    engine = build_engine(db_url)
    try:
        with _unit_of_work(session_factory(engine)) as s:
            yield s
    finally:
        engine.dispose()
