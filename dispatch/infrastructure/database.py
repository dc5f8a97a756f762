"""
Async SQLAlchemy engine and session factory.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.  Services
receive a session factory rather than importing this module so tests can
point them at a throwaway database.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from dispatch.config import settings
from dispatch.domain.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

# Raised when the database cannot be reached, as opposed to a bad statement
STORE_UNAVAILABLE = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


def make_engine(url: str, **kwargs) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False, **kwargs)
    return create_async_engine(url, echo=False, pool_size=20, max_overflow=10, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Open a session; uncommitted work is rolled back when the block exits.

    Connectivity failures surface as ``DependencyUnavailable`` with the
    driver detail kept in the log.
    """
    try:
        async with session_factory() as session:
            yield session
    except STORE_UNAVAILABLE as exc:
        logger.error("Durable store unavailable: %s", exc)
        raise DependencyUnavailable("Durable store unavailable") from exc


engine = make_engine(settings.database_url)
async_session_factory = make_session_factory(engine)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""
