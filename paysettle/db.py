"""Database configuration and session management."""
from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from paysettle.config import Settings, get_settings
from paysettle.models.base import Base

# Public aliases kept so callers can inspect the active engine.
engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _install_sqlite_hooks(sqlite_engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so a read-then-write of the
    subscription row would not be isolated from a concurrent settlement.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, settings: Settings | None = None) -> Engine:
    """Create an engine with the isolation guarantees settlements rely on."""

    settings = settings or get_settings()
    if _is_sqlite(database_url):
        new_engine = create_engine(
            database_url,
            future=True,
            echo=False,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.settlement_timeout_seconds,
            },
        )
        _install_sqlite_hooks(new_engine)
        return new_engine

    kwargs: dict[str, object] = {"pool_pre_ping": True}
    if settings.database_isolation_level:
        kwargs["isolation_level"] = settings.database_isolation_level
    return create_engine(database_url, future=True, echo=False, **kwargs)


def build_sessionmaker(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_engine(settings: Settings | None = None) -> Engine:
    """Initialise the synchronous SQLAlchemy engine lazily."""

    global engine, SessionLocal
    if engine is None:
        settings = settings or get_settings()
        engine = build_engine(settings.database_url, settings)
        SessionLocal = build_sessionmaker(engine)
    return engine


def get_engine() -> Engine:
    """Return the active SQLAlchemy engine, creating it if necessary."""

    if engine is None:
        return init_engine()
    return engine


def get_sessionmaker() -> sessionmaker[Session]:
    """Return the configured session factory, initialising the engine on demand."""

    if SessionLocal is None:
        init_engine()
    assert SessionLocal is not None  # for type-checkers
    return SessionLocal


def get_session_factory() -> sessionmaker[Session]:
    """FastAPI dependency: the ingestion gate opens its own independent transactions."""

    return get_sessionmaker()


def create_all(bind: Engine | None = None) -> None:
    """Create all database tables using the shared declarative metadata."""

    Base.metadata.create_all(bind=bind or get_engine())


def close_engine() -> None:
    """Dispose of the SQLAlchemy engine and reset the session factory."""

    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
        engine = None
        SessionLocal = None


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "build_engine",
    "build_sessionmaker",
    "create_all",
    "get_engine",
    "get_sessionmaker",
    "get_session_factory",
    "init_engine",
    "close_engine",
]
