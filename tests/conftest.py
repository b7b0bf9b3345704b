"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from compete_ledger.storage.database import DatabaseManager
from compete_ledger.storage.models import Base

WALLET = "0x1234567890abcdef1234567890abcdef12345678"
OTHER_WALLET = "0xabcdef1234567890abcdef1234567890abcdef12"


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[DatabaseManager]:
    """DatabaseManager over a file database, so every session sees committed data."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def wallet() -> str:
    return WALLET


@pytest.fixture
def other_wallet() -> str:
    return OTHER_WALLET
