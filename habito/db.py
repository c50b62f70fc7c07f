from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from loguru import logger

from .config import settings


def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, future=True, pool_pre_ping=True)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.LOCAL_CACHE_URL)
AsyncSessionLocal = make_session_factory(engine)


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create tables for every registered model on the given engine."""
    from .models.cache import CacheEntry
    from .models.habit import Habit, CompletionRecord
    from .models.spirit import Spirit, SpiritStats, SkinProgress

    target = target or engine
    async with target.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created/verified on {}", target.url)


@asynccontextmanager
async def get_session(factory: sessionmaker | None = None) -> AsyncGenerator[AsyncSession, None]:
    session = (factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()
