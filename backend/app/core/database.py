"""
Database layer — async SQL via SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Lazily created async engine and session factory
    • Base model for ORM entities
    • Table creation / engine disposal

The engine is created on first use, so the in-memory store backend never
needs a database driver installed.

Usage:
    from backend.app.core.database import Base, get_session_factory

    factory = get_session_factory()
    async with factory() as session:
        async with session.begin():
            session.add(AlertModel(...))
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
_engine: Optional[AsyncEngine] = None


def create_engine_for(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing applies to server databases only."""
    kwargs = {"echo": echo, "future": True}
    if url.startswith("postgresql"):
        kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


# ── Session Factory ──
def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    return async_sessionmaker(
        engine or get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: Optional[AsyncEngine] = None) -> None:
    """Dispose engine connections."""
    global _engine
    target = engine or _engine
    if target is None:
        return
    await target.dispose()
    if target is _engine:
        _engine = None
    logger.info("Database connections closed")
