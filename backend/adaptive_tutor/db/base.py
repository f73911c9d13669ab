"""Database base class and session management.

This module provides:
- SQLAlchemy base class for declarative models
- Lazily created async engine and session factory for the tutor database
- Startup/shutdown helpers
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..core.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


_tutor_engine: Optional[AsyncEngine] = None
_tutor_session_maker: Optional[async_sessionmaker] = None


def _engine_kwargs(url: str) -> Dict[str, Any]:
    settings = get_settings()
    kwargs: Dict[str, Any] = {"echo": settings.DEBUG and settings.APP_ENV == "development"}
    # SQLite pools do not take sizing arguments
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )
    return kwargs


def get_tutor_engine() -> AsyncEngine:
    """Get or create the tutor database engine."""
    global _tutor_engine

    if _tutor_engine is None:
        url = get_settings().TUTOR_DB_URL
        _tutor_engine = create_async_engine(url, **_engine_kwargs(url))

    return _tutor_engine


def get_tutor_session_maker() -> async_sessionmaker:
    """Get or create the tutor session maker."""
    global _tutor_session_maker

    if _tutor_session_maker is None:
        _tutor_session_maker = async_sessionmaker(
            bind=get_tutor_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )

    return _tutor_session_maker


@asynccontextmanager
async def get_tutor_session():
    """Get a tutor database session as an async context manager."""
    session_maker = get_tutor_session_maker()
    async with session_maker() as session:
        yield session


# =============================================================================
# Utility Functions
# =============================================================================


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables on the given engine."""
    from . import models  # noqa: F401  (register tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_databases() -> None:
    """Initialize the tutor database (create tables)."""
    await create_tables(get_tutor_engine())


async def close_all() -> None:
    """Close all database connections."""
    global _tutor_engine, _tutor_session_maker

    if _tutor_engine is not None:
        await _tutor_engine.dispose()
        _tutor_engine = None

    _tutor_session_maker = None
