"""
Async database engine, session factory and FastAPI dependencies.
"""

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _async_database_url(url: str) -> str:
    """Map sync driver URLs onto their async counterparts."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


DATABASE_URL = _async_database_url(settings.DATABASE_URL)

engine = create_async_engine(DATABASE_URL, pool_pre_ping=not DATABASE_URL.startswith("sqlite"))

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session dependency."""
    async with async_session_maker() as session:
        yield session


def get_session_maker() -> async_sessionmaker:
    """Session factory dependency for work that outlives the request."""
    return async_session_maker
