"""Test fixtures for the lead store and identity ledger.

Provides:
- In-memory sqlite+aiosqlite engine with the sync tables created per test
- session_factory in the async-generator shape the repositories expect
- IdentityLedger and LeadRepository bound to that factory
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.amoebacrm.core.database import Base
from src.amoebacrm.sync import models  # noqa: F401
from src.amoebacrm.sync.leads import LeadRepository
from src.amoebacrm.sync.ledger import IdentityLedger
from src.amoebacrm.sync.schemas import INTEGRATION_NAME

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Async-generator session factory over the test engine."""
    sessionmaker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with sessionmaker() as session:
            yield session

    return _factory


@pytest.fixture
def ledger(session_factory) -> IdentityLedger:
    return IdentityLedger(session_factory=session_factory, integration=INTEGRATION_NAME)


@pytest.fixture
def leads(session_factory) -> LeadRepository:
    return LeadRepository(session_factory=session_factory)
