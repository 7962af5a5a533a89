"""Database module with async SQLAlchemy engine and session management."""

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import get_settings

# SQLAlchemy base for models
Base = declarative_base()


@lru_cache()
def get_engine() -> AsyncEngine:
    """Async engine, created on first use so importing the package needs no driver."""
    settings = get_settings()
    options = {"echo": settings.debug}
    if not settings.db_url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20)
    return create_async_engine(settings.db_url, **options)


@lru_cache()
def get_sessionmaker() -> async_sessionmaker:
    """Session factory bound to the application engine."""
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_all(engine: AsyncEngine = None):
    """Create all tables in the database."""
    # Importing the models registers their tables on Base.metadata
    from . import models  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
