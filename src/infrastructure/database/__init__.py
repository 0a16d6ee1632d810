"""
Database Infrastructure
=======================

Process-wide async engine and session maker (SQLAlchemy 2.0).

Production runs on asyncpg; tests point the same code at aiosqlite. The
ops inbox issues independent reads concurrently, so repositories receive
the session maker and open one short-lived session per query instead of
sharing a request-scoped session.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings


class Base(DeclarativeBase):
    """Declarative base for the quote and ops tables."""


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

_NOT_READY = "Database not initialized; call init_database() during startup"


def get_engine() -> AsyncEngine:
    """Engine used for health checks and schema introspection."""
    if _engine is None:
        raise RuntimeError(_NOT_READY)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session maker shared by all repositories."""
    if _session_maker is None:
        raise RuntimeError(_NOT_READY)
    return _session_maker


def _engine_options(url: str) -> dict:
    options = {"echo": settings.debug, "pool_pre_ping": True}
    # SQLite uses a static pool without size knobs
    if not url.startswith("sqlite"):
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
    return options


def init_database(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Build the engine and session maker.

    Args:
        database_url: Override for settings.database_url (tests pass sqlite)

    Returns:
        AsyncEngine: The initialized engine
    """
    global _engine, _session_maker

    # asyncpg spells the libpq sslmode parameter "ssl"
    url = (database_url or settings.database_url).replace("sslmode=", "ssl=")

    _engine = create_async_engine(url, **_engine_options(url))
    _session_maker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    """Dispose pooled connections; safe to call twice."""
    global _engine, _session_maker

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_maker = None


async def create_tables() -> None:
    """
    Create every mapped table.

    Local development and tests only; deployed schemas are migrated
    outside this service and may lag behind the models.
    """
    # Importing the models registers them on Base.metadata
    import src.ops.infrastructure.models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
