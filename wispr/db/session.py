"""
Database Session Management - Async SQLAlchemy session factory.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from wispr.config import settings
from wispr.db.models import Base


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine with pooling suited to the database backend."""
    if database_url.startswith("sqlite"):
        # SQLite (local development): one connection per session
        return create_async_engine(
            database_url,
            poolclass=NullPool,
            echo=settings.log_level == "DEBUG",
        )
    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        echo=settings.log_level == "DEBUG",
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the ledger store; objects stay readable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create tables directly from metadata (SQLite development databases and tests)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
