"""
Database Infrastructure
=======================

Engine and session lifecycle for the contract, order and metrics store.

Uses SQLAlchemy 2.0 with asyncpg (aiosqlite in tests).

The batch evaluates contracts concurrently and an AsyncSession must not be
shared between tasks, so repositories take a *session factory*
(``get_session_context`` unless a test supplies its own) and open one
short-lived session per unit of work.
"""

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings


class Base(DeclarativeBase):
    """Declarative base shared by the performance models."""


SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine not initialized. Call init_database() first.")
    return _engine


def init_database(database_url: str | None = None) -> AsyncEngine:
    """
    Build the engine and session maker. Called once from the app lifespan.

    Pool sizing is skipped for SQLite URLs, which use a static pool.
    """
    global _engine, _session_maker

    # asyncpg expects ssl= rather than libpq's sslmode=
    url = (database_url or settings.database_url).replace("sslmode=", "ssl=")

    engine_kwargs = {"echo": settings.debug, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = settings.db_pool_size
        engine_kwargs["max_overflow"] = settings.db_max_overflow

    _engine = create_async_engine(url, **engine_kwargs)
    _session_maker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    One transaction per block: commit on clean exit, rollback on error.

    Usage:
        async with get_session_context() as session:
            result = await session.execute(select(ContractModel))
    """
    if _session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with _session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """
    Create every mapped table that does not exist yet.

    Development convenience; production schemas are migrated separately.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def database_status() -> str:
    """Health check: ``ok``, ``unavailable`` or ``not_initialized``."""
    if _engine is None:
        return "not_initialized"
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (OSError, SQLAlchemyError):
        return "unavailable"
    return "ok"
