"""
Engine and session lifecycle for the subscription tables.

Only two URL families are accepted, each mapped to its async driver:
  postgresql:// | postgres://  →  postgresql+asyncpg://
  sqlite://                    →  sqlite+aiosqlite://

SQLite connections switch on foreign keys so a subscription can only point
at existing users and meetups, as it must on PostgreSQL.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        raise ValueError(f"Not a database URL: {db_url!r}")
    if scheme in _ASYNC_DRIVERS.values():
        return db_url
    if scheme not in _ASYNC_DRIVERS:
        raise ValueError(f"Unsupported database {scheme!r}; use postgresql:// or sqlite://")
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_url: str = None) -> AsyncEngine:
    """Return the process-wide engine, creating it from db_url or settings on first use."""
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    config: DatabaseConfig = settings.database
    url = _to_async_url(db_url or config.url)

    if url.startswith("sqlite"):
        _engine = create_async_engine(url, echo=settings.debug)
        event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_async_engine(
            url,
            echo=settings.debug,
            pool_size=config.pool_size,
            pool_pre_ping=True,
        )

    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=make_url(url).render_as_string(hide_password=True))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed when the block exits cleanly, rolled back otherwise."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            # CancelledError included: a cancelled admission writes nothing
            await session.rollback()
            raise


async def existing_tables(conn: AsyncConnection) -> list[str]:
    return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def missing_tables() -> list[str]:
    """Tables the models define that the database does not have yet."""
    async with get_engine().connect() as conn:
        present = set(await existing_tables(conn))
    return sorted(set(Base.metadata.tables) - present)


async def init_db() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
