"""
Database connection and session management

Provides:
- Async SQLAlchemy engine and session factory
- Transaction context manager for ACID compliance
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

import structlog
from hie_sync.core.config import settings
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = structlog.get_logger(__name__)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (test databases)
JSONType = JSON().with_variant(JSONB(), "postgresql")

async_engine = create_async_engine(
    settings.ASYNC_DATABASE_URL,
    pool_pre_ping=True,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_recycle=3600,
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """Get async database session for async operations."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker = AsyncSessionLocal) -> AsyncIterator[AsyncSession]:
    """
    Open a session and run the block in a single transaction.

    Commits on success, rolls back and re-raises on error.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
