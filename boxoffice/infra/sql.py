"""Database handle shared by the app, the catalogue seeder and the tests.

Every unit of DB work runs inside ``database.gated()``. The gate is a
semaphore sized to the connection pool, so a burst of notifications
queues in the event loop instead of timing out on pool checkout while
holding a half-finished fulfillment.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker,
    create_async_engine,
)

from ..config import Settings
from .timings import timeit

logger = structlog.get_logger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    gate_limit: int
    _gate: asyncio.Semaphore

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        # wait time shows up as "db.gate_wait" on /api/admin/timings
        async with timeit("db.gate_wait"):
            await self._gate.acquire()
        try:
            yield
        finally:
            self._gate.release()

    async def run_ddl(
        self, *steps: Callable[[AsyncConnection], Awaitable[None]]
    ) -> None:
        """Run idempotent schema steps in one transaction."""
        async with self.engine.begin() as conn:
            for step in steps:
                await step(conn)

    async def dispose(self) -> None:
        await self.engine.dispose()


def open_database(settings: Settings) -> Database:
    db_url = normalize_async_url(settings.database_url)
    kw = dict(pool_pre_ping=True)

    is_postgres = db_url.startswith("postgresql+asyncpg://")
    if is_postgres:
        kw.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate_limit = max(1, settings.db_gate_limit or settings.db_pool_size)
    logger.debug("db.opened", dialect=engine.dialect.name,
                 pool_size=settings.db_pool_size if is_postgres else None,
                 gate_limit=gate_limit)
    return Database(
        engine=engine,
        sessions=sessions,
        gate_limit=gate_limit,
        _gate=asyncio.Semaphore(gate_limit),
    )
