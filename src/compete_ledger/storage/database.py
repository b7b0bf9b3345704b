"""Async engine and transaction scopes for the ledger database.

Every balance mutation, journal write and reward commitment runs inside a
``DatabaseManager.get_async_session()`` block; the block is the unit of
atomicity for those operations.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from compete_ledger.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from compete_ledger.config import DatabaseSettings

logger = logging.getLogger(__name__)

# Sync dialect prefixes mapped to the async driver used for them.
ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def to_async_url(database_url: str) -> str:
    """Rewrite a sync dialect URL to its async driver; other URLs pass through."""
    for sync_prefix, async_prefix in ASYNC_DRIVERS:
        if database_url.startswith(sync_prefix):
            logger.debug("Using async driver %s for %s", async_prefix, sync_prefix)
            return async_prefix + database_url[len(sync_prefix) :]
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, switching sync URLs to their async driver."""
    return create_async_engine(to_async_url(database_url), **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after commit; DTOs are built from them afterwards.
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create every ledger table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger schema created (%d tables)", len(Base.metadata.tables))


class DatabaseManager:
    """Lazily builds the engine and hands out one transaction per session block.

    A ``get_async_session()`` block commits when it exits normally and rolls
    back, re-raising, on any exception. Nothing is left half-applied.

    Args:
        database_url: SQLAlchemy URL. ``postgresql://`` and ``sqlite://`` are
            upgraded to asyncpg and aiosqlite.
        pool_size: Pool size for server databases. Ignored for SQLite.
        max_overflow: Connections allowed beyond ``pool_size``. Ignored for SQLite.
        echo: Log every SQL statement.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = to_async_url(database_url)
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> DatabaseManager:
        return cls(
            settings.url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            echo=settings.echo,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"echo": self._echo}
        # aiosqlite pools reject sizing options.
        if not self.is_sqlite:
            options["pool_size"] = self._pool_size
            options["max_overflow"] = self._max_overflow
            options["pool_pre_ping"] = True
        return options

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_db_engine(self.database_url, **self.engine_options())
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session whose work is committed or rolled back as one unit."""
        if self._sessions is None:
            self._sessions = create_async_session_factory(self.engine)

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_schema_async(self) -> None:
        await init_async_db(self.engine)

    async def dispose_async(self) -> None:
        """Close pooled connections; the next session rebuilds the engine."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Ledger database connections disposed")
