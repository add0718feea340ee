from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from umami_sync.core.config import get_settings

# Create declarative base
Base = declarative_base()


@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the user-store engine on first use."""
    settings = get_settings()
    return create_async_engine(settings.database_url, echo=settings.debug)


@lru_cache()
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency for FastAPI to get the store session factory."""
    return get_session_maker()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get database session."""
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database - create all tables."""
    # Register models on Base before create_all
    import umami_sync.models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await get_engine().dispose()
