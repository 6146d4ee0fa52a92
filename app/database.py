"""SQLAlchemy engine management for the SQL cache backend."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import MetaData, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for the cache tables."""

    metadata = MetaData()


def _enable_sqlite_wal(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


class Database:
    """Own an async engine for the cache table and hand out sessions.

    SQLite files are switched to WAL mode so catalog reads are not blocked
    while a freshly generated catalog is written.
    """

    def __init__(self, database_url: str, *, echo: bool = False):
        url = make_url(database_url)
        self._is_sqlite = url.get_backend_name() == "sqlite"
        self._engine: AsyncEngine = create_async_engine(url, echo=echo)
        if self._is_sqlite and url.database not in (None, "", ":memory:"):
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_wal)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create the cache table if it does not exist yet."""

        # Registers the mapped tables on Base.metadata.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session
