"""Async SQLAlchemy engine + session factory.

Supports both SQLite (dev/tests) and PostgreSQL (prod) with appropriate pool settings.
"""
from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import settings

# Seconds a SQLite writer waits for the database lock before failing
SQLITE_BUSY_TIMEOUT = 30


def async_database_url(url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg:// for async support."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


_db_url = async_database_url(settings.DATABASE_URL)

_is_sqlite = _db_url.startswith("sqlite")

_engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if _is_sqlite:
    _engine_kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
else:
    _engine_kwargs.update({
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections every 30 min
        "pool_pre_ping": True,
    })


def enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN on SQLite so SAVEPOINTs nest inside the unit of work.

    The sqlite3 driver defers BEGIN until the first DML statement, which makes
    a SAVEPOINT issued first behave like an independent transaction. Ledger
    operations rely on savepoints rolling back cleanly, so take over BEGIN.

    BEGIN IMMEDIATE takes the write lock up front. A deferred BEGIN lets two
    units of work both read and then fail with "database is locked" when they
    upgrade to write, without waiting on the busy timeout. Immediate writers
    queue on the timeout instead, so concurrent deliveries serialize.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_async_engine(_db_url, **_engine_kwargs)
if _is_sqlite:
    enable_sqlite_savepoints(engine)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory used by the webhook processor and scheduled jobs.

    Looked up at call time so tests can swap ``async_session`` for a test engine.
    """
    return async_session


async def get_session() -> AsyncSession:
    """Dependency for FastAPI: yields an async session."""
    async with async_session() as session:
        yield session
