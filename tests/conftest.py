"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DRY_RUN"] = "true"
os.environ["DEBUG"] = "true"

from tipbot.chain.factory import reset_chain_node
from tipbot.ledger.models import Base
from tipbot.ledger.repository import LedgerRepository
from tipbot.notifications.notifier import Notifier
from tipbot.rates import RateConverter
from tipbot.utils.locks import clear_user_locks

from tests.fakes import FakeNode, FakeReddit

# 25 LBC per USD
RATE = Decimal("0.04")


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh lock registry and node for each test."""
    clear_user_locks()
    reset_chain_node()
    yield
    clear_user_locks()
    reset_chain_node()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for services; each unit opens its own session."""
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for repository tests."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def reddit() -> FakeReddit:
    return FakeReddit()


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def notifier(reddit: FakeReddit) -> Notifier:
    return Notifier(reddit, how_to_use_url="https://example.org/howto", rate_limit_delay=0)


@pytest.fixture
def rates() -> AsyncMock:
    converter = AsyncMock(spec=RateConverter)
    converter.get_rate.return_value = RATE
    return converter
