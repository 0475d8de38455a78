"""Async engine and unit-of-work sessions for the custody store.

Production runs on PostgreSQL through asyncpg; local runs and the test
suite use SQLite through aiosqlite. Every `get_async_session()` block is
one database transaction, which is what the wallet store and the ledger
rely on for their all-or-nothing writes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from exchange_custody.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.ext.asyncio import AsyncEngine

    from exchange_custody.config import DatabaseSettings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


def _normalize_async_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL uses 'postgresql://'; connecting with 'postgresql+asyncpg://'")
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def _configure_sqlite(dbapi_connection: Any, _connection_record: Any) -> None:
    # Address rows reference their wallet; SQLite only checks that when asked.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create the async engine for a custody database URL.

    Pool sizing options are dropped for SQLite, which does not use a queue pool.
    """
    url = _normalize_async_database_url(database_url)
    if url.startswith("sqlite"):
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
        engine = create_async_engine(url, **kwargs)
        event.listen(engine.sync_engine, "connect", _configure_sqlite)
        return engine
    return create_async_engine(url, **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # DTOs are built after commit, so loaded attributes must survive it.
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create every custody table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Custody schema initialized")


def _missing_tables(connection: Connection) -> list[str]:
    existing = set(inspect(connection).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in existing)


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions.

    Each `get_async_session()` block commits on normal exit and rolls back
    if the block raises, so repositories never commit on their own.

    Example:
        ```python
        db = DatabaseManager.from_settings(settings.database)
        async with db.get_async_session() as session:
            owner = await WalletRepository(session).resolve_owner("ethereum", address)
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

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

    def _get_async_engine(self) -> AsyncEngine:
        if self._async_engine is None:
            self._async_engine = create_async_db_engine(
                self.database_url,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                echo=self._echo,
                pool_pre_ping=True,
            )
        return self._async_engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commit on exit, roll back on error."""
        if self._async_session_factory is None:
            self._async_session_factory = create_async_session_factory(self._get_async_engine())

        session = self._async_session_factory()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        await init_async_db(self._get_async_engine())

    async def ping(self) -> None:
        """Round-trip a trivial query; raises if the database is unreachable."""
        async with self._get_async_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def missing_tables(self) -> list[str]:
        """Custody tables absent from the connected database."""
        async with self._get_async_engine().connect() as conn:
            return await conn.run_sync(_missing_tables)

    async def dispose_async(self) -> None:
        if self._async_engine is not None:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.debug("Database connections disposed")
