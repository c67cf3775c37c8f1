"""
Database configuration and engine management for the termhist store.

This module turns the configured database URL into an async SQLAlchemy engine
and bootstraps the schema. Local SQLite files go through aiosqlite; any other
URL is handed to its own async dialect together with the auth token. A sync
URL turns on local-replica mode and needs a driver that can replicate.
"""

import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import SingletonThreadPool, StaticPool

from .config import HistorySettings
from .errors import ConfigError

logger = logging.getLogger(__name__)

Base = declarative_base()

# Seconds a SQLite connection waits for another writer before giving up
SQLITE_BUSY_TIMEOUT = 30


def engine_url(url: str) -> str:
    """Map a configured database URL onto an async SQLAlchemy URL."""
    if url == ":memory:":
        return "sqlite+aiosqlite://"
    if url.startswith("file:"):
        return "sqlite+aiosqlite:///" + url[len("file:") :]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    return url


def is_aiosqlite_url(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite:")


def build_engine(settings: HistorySettings) -> AsyncEngine:
    """
    Create the engine for the configured URL. No connection is opened yet.

    Raises ConfigError when a sync URL is configured for a driver that cannot
    act as an embedded replica.
    """
    url = engine_url(settings.turso_url)
    local = is_aiosqlite_url(url)
    connect_args = {}
    if settings.turso_sync_url:
        if local:
            raise ConfigError(
                f"TURSO_SYNC_URL is set but {settings.turso_url} is opened with "
                "aiosqlite, which cannot sync to a remote database. Use a libSQL "
                "async dialect URL for replica mode or unset TURSO_SYNC_URL"
            )
        # Embedded replica: reads served locally, writes synced upstream
        connect_args["sync_url"] = settings.turso_sync_url
        connect_args["sync_interval"] = settings.turso_sync_interval
    if local:
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
    elif settings.turso_token:
        connect_args["auth_token"] = settings.turso_token
    logger.debug(
        "Creating engine for %s (replica=%s)", url, bool(settings.turso_sync_url)
    )
    engine = create_async_engine(url, connect_args=connect_args, echo=False)
    if local:
        _take_write_lock_on_begin(engine)
    return engine


def has_single_connection(engine: AsyncEngine) -> bool:
    """True when every session shares one connection, as with in-memory SQLite."""
    return isinstance(engine.sync_engine.pool, (StaticPool, SingletonThreadPool))


def _take_write_lock_on_begin(engine: AsyncEngine) -> None:
    """
    Start every SQLite transaction with BEGIN IMMEDIATE.

    Concurrent partition inserts use separate connections; taking the write
    lock up front makes them wait on the busy timeout instead of failing
    with "database is locked" when a deferred transaction tries to upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def ensure_schema(engine: AsyncEngine) -> None:
    """
    Probe the connection, then create any missing tables and indexes.

    Every CREATE runs as its own statement with check-first semantics, so
    this is safe to call on every start and after an interrupted earlier run.
    """
    from . import models  # noqa: F401  registers the tables on Base.metadata

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
