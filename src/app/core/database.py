"""Async SQLAlchemy engine and session factory for the contact store.

Provides:
- Base: Declarative base for users, contacts, organizations, sync history
- get_engine(): Lazily created async engine, pooled per DATABASE_POOL_SIZE
- get_session(): Session factory handed to ContactRepository
- check_database(): Readiness probe used by /health/ready
- init_db() / close_db(): Lifespan helpers
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return _engine


class Base(DeclarativeBase):
    """Declarative base shared by every contact sync table."""


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one AsyncSession; repositories commit explicitly."""
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def check_database() -> str | None:
    """Run ``SELECT 1``. Returns None when healthy, else the error text."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return str(exc) or type(exc).__name__
    return None


async def init_db() -> None:
    """Create missing tables. Development convenience; deployments run Alembic."""
    import src.app.contacts.models  # noqa: F401 -- register models on Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
