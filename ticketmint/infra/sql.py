from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)


Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
    "foreign_keys=ON",
)


def _normalize_async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


# DB gate: never queue more work than the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore) -> AsyncIterator[None]:
    async with sem:
        yield


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated

    async def dispose(self) -> None:
        await self.engine.dispose()


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


def make_database(
    database_url: str, *,
    pool_size: int = 10, max_overflow: int = 10, pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
) -> Database:
    url = _normalize_async_url(database_url)
    sqlite = url.startswith("sqlite+aiosqlite://")

    kw = {"pool_pre_ping": True}
    if not sqlite:
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    engine = create_async_engine(url, **kw)
    if sqlite:
        _install_sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine, class_=AsyncSession,
        expire_on_commit=False, autoflush=False,
    )

    sem = asyncio.Semaphore(max(1, gate_limit or pool_size))
    return Database(engine=engine, sessions=sessions,
                    gated=lambda: _gated(sem))
