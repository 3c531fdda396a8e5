"""Database connection management for taskrelay.

This module provides factory functions for creating SQLAlchemy async engines
and session factories configured from DatabaseConfig, plus the
``transaction`` context manager every state-changing operation runs in.

Example usage:
    >>> from taskrelay.config import DatabaseConfig
    >>> from taskrelay.database.connection import get_engine, get_session_factory
    >>>
    >>> engine = get_engine(DatabaseConfig(url="postgresql+asyncpg://localhost/taskrelay"))
    >>> SessionFactory = get_session_factory(engine)
    >>>
    >>> async with transaction(SessionFactory) as session:
    ...     task = await get_task(session, task_id)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from taskrelay.config import DatabaseConfig
from taskrelay.database.models.base import Base
from taskrelay.errors import StoreError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger(__name__)


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create an async SQLAlchemy engine from database configuration.

    Pool sizing applies to server databases only; SQLite URLs get the
    dialect's default pool.

    Args:
        config: Database configuration containing URL, pool settings,
                and SQL echo preference.

    Returns:
        Configured AsyncEngine instance.
    """
    if config.url.startswith("sqlite"):
        return create_async_engine(config.url, echo=config.echo)

    return create_async_engine(
        config.url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        echo=config.echo,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the given engine.

    Sessions are created with expire_on_commit=False so committed objects
    can be serialized into events after the transaction closes.

    Args:
        engine: AsyncEngine to bind sessions to.

    Returns:
        Configured async_sessionmaker that produces AsyncSession instances.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables declared on the model metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_schema_created", tables=sorted(Base.metadata.tables))


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session and run the body inside a single transaction.

    The transaction commits when the body exits normally and rolls back on
    any exception. Domain errors propagate unchanged; SQLAlchemy errors are
    re-raised as StoreError after the rollback.

    Args:
        session_factory: Factory producing AsyncSession instances.

    Yields:
        The AsyncSession bound to the open transaction.

    Raises:
        StoreError: If the persistence layer failed.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except SQLAlchemyError as e:
        logger.error("store_transaction_failed", error=str(e), exc_info=True)
        raise StoreError(f"Store operation failed: {e}") from e
