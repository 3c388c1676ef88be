"""
Database wiring for the store.

A club runs on one SQLite file; Postgres works the same way. The plain
``sqlite://`` / ``postgresql://`` URLs found in env files are mapped onto
the async drivers. Store calls queue on ``gated()`` so a burst of checkouts
never holds more sessions than ``DB_GATE_LIMIT``.
"""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "10"))

ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
}


def async_url(database_url: str) -> str:
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        raise ValueError(f"not a database URL: {database_url!r}")
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _sqlite_connect(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    # extras, variants and bookings cascade from their parent row
    cur.execute("PRAGMA foreign_keys=ON;")
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.close()


class Database:
    """Engine, session factory and gate for one database URL."""

    def __init__(self, database_url: str, *,
                 gate_limit: int = DB_GATE_LIMIT) -> None:
        self.url = async_url(database_url)
        self.engine: AsyncEngine = create_async_engine(
            self.url, pool_pre_ping=True
        )
        if self.url.startswith("sqlite+"):
            event.listen(self.engine.sync_engine, "connect", _sqlite_connect)
        self.sessions = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._gate = asyncio.Semaphore(max(1, gate_limit))

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        async with self._gate:
            yield

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
