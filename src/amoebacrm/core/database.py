"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for the lead store and identity ledger tables
- get_engine(): Lazily created async engine singleton
- get_session(): Session factory (async generator) used by repositories
- session_scope(): Borrow one session from a factory, mapping SQLAlchemy errors
  to PersistenceError
- init_db() / close_db(): Table creation and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import MetaData
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.amoebacrm.config import get_settings
from src.amoebacrm.crm.errors import PersistenceError

logger = structlog.get_logger(__name__)

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.DATABASE_URL, echo=False)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(DeclarativeBase):
    """Base class for all connector models."""

    metadata = metadata


# ── Session Factory ─────────────────────────────────────────────────────────


SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine singleton."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


@asynccontextmanager
async def session_scope(
    session_factory: SessionFactory, operation: str
) -> AsyncIterator[AsyncSession]:
    """Borrow one session from a factory, translating SQLAlchemy failures.

    Raises:
        PersistenceError: If any SQLAlchemyError escapes the block.
    """
    sessions = session_factory()
    try:
        session = await anext(sessions)
        yield session
    except SQLAlchemyError as exc:
        logger.error("database.operation_failed", operation=operation, error=str(exc))
        raise PersistenceError(f"{operation} failed: {exc}") from exc
    finally:
        await sessions.aclose()


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the lead and identity link tables if they don't exist."""
    # Import models so they register on Base.metadata
    from src.amoebacrm.sync import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
