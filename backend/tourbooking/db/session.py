"""
Async engine, session factory and transaction helpers.

PostgreSQL (asyncpg) is the production store: row locks taken with
SELECT ... FOR UPDATE are the only concurrency guard in the engine.
SQLite (aiosqlite) is accepted for local development and tests; it has no row
locks, so every transaction is opened with BEGIN IMMEDIATE, which serializes
writers on the database lock instead.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tourbooking.core.config import get_settings


def create_engine_for(url: str, **kwargs) -> AsyncEngine:
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", 30)
        engine = create_async_engine(url, connect_args=connect_args, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    settings = get_settings()
    kwargs.setdefault("pool_size", settings.DB_POOL_SIZE)
    kwargs.setdefault("max_overflow", settings.DB_MAX_OVERFLOW)
    kwargs.setdefault("pool_timeout", settings.DB_POOL_TIMEOUT)
    kwargs.setdefault("pool_recycle", settings.DB_POOL_RECYCLE)
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, **kwargs)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@lru_cache()
def get_engine() -> AsyncEngine:
    return create_engine_for(get_settings().DATABASE_URL)


@lru_cache()
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return make_sessionmaker(get_engine())


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request. Services own commit/rollback."""
    async with get_sessionmaker()() as session:
        yield session


@asynccontextmanager
async def atomic(db: AsyncSession):
    """Commit on success; roll back every write of the block on any error."""
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise


def dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name
