"""
Engine construction for the SQL call store.

Settings carry plain URLs (``postgresql://``, ``mysql://``, ``sqlite:///``);
the store needs the async driver for each dialect, so URLs are rewritten
to asyncpg, aiomysql and aiosqlite respectively.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import inspect
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in ASYNC_DRIVERS:
        return db_url
    return f"{ASYNC_DRIVERS[scheme]}://{rest}"


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    url = make_url(to_async_url(db_url))
    if url.get_backend_name() == "sqlite":
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # A memory database exists per connection; every session must share one
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {"pool_size": 10, "max_overflow": 20, "pool_recycle": 1800, "pool_pre_ping": True}
    engine = create_async_engine(url, echo=echo, **kwargs)
    logger.info("database_engine_created", dialect=engine.dialect.name,
                url=url.render_as_string(hide_password=True))
    return engine


def session_scope(engine: AsyncEngine):
    """Return a context-manager factory: commit on success, roll back on error."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def scope() -> AsyncIterator[AsyncSession]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


async def create_tables(engine: AsyncEngine) -> list[str]:
    """Create missing tables; returns the names that were created."""
    before = set(await existing_tables(engine))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    created = sorted(set(Base.metadata.tables) - before)
    logger.info("database_tables_ready", dialect=engine.dialect.name, created=created)
    return created


async def existing_tables(engine: AsyncEngine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
