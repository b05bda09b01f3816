# src/GraphPorter/db.py
from __future__ import annotations

import contextlib
from collections.abc import Iterator

import structlog
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from GraphPorter.errors import TransportError

log = structlog.get_logger()


def _normalize_url(url: str) -> str:
    # Downgrade async driver URLs; the extractor works on synchronous sessions
    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql://", 1)
    return url


def _install_sqlite_hooks(engine: Engine, *, foreign_keys: bool) -> None:
    """Let pysqlite emit BEGIN/SAVEPOINT itself so nested transactions work."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None
        if foreign_keys:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")


def create_db_engine(url: str, *, echo: bool = False, sqlite_foreign_keys: bool = True) -> Engine:
    database_url = _normalize_url(url)
    kwargs: dict[str, object] = {"echo": echo}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        kwargs.update(connect_args={"timeout": 30})
        # In-memory DBs need one shared connection so the schema persists
        if database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url:
            kwargs.update(poolclass=StaticPool)
            kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}
    elif database_url.startswith("postgresql"):
        kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10, pool_timeout=30)

    try:
        engine = create_engine(database_url, **kwargs)
    except SQLAlchemyError as exc:
        raise TransportError(f"Cannot create engine: {exc}", path=database_url) from exc
    if is_sqlite:
        _install_sqlite_hooks(engine, foreign_keys=sqlite_foreign_keys)

    parsed = make_url(database_url)
    log.info(
        "db.connection.config",
        backend=parsed.get_backend_name(),
        user=parsed.username or "",
        host=parsed.host or "",
        database=parsed.database or "",
        driver=parsed.drivername,
    )
    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


@contextlib.contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    with factory() as s:
        try:
            yield s
            s.commit()
        except Exception:
            log.error("db.session.error", exc_info=True)
            s.rollback()
            raise
