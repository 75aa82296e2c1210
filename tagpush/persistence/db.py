from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tagpush.core.config import Settings, get_settings
from tagpush.domain.models import Base


def _engine_kwargs(database_url: str, settings: Settings) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # In-memory SQLite must share one connection or every session sees an empty database.
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    # Configure bounded asyncpg pools for predictable latency under load.
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


class Database:
    """Process-wide database handle.

    Created once at process start, shared by reference with every component
    that needs sessions, and disposed on shutdown.
    """

    def __init__(self, database_url: str | None = None, *, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.url = database_url or settings.database_url
        self.engine: AsyncEngine = create_async_engine(self.url, **_engine_kwargs(self.url, settings))
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        # Used by tests and local SQLite runs; Postgres deployments use alembic.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()
