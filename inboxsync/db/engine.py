"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from inboxsync.config import DatabaseConfig
from inboxsync.db.tables import Base


class Database:
    """Holds the engine and its session factory.

    Created once at startup and stored on ``app.state``.  Extra keyword
    arguments are passed to :func:`create_async_engine` (tests pass a
    ``poolclass`` for in-memory SQLite).
    """

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        kwargs: dict[str, Any] = {"echo": config.echo}
        if not config.url.startswith("sqlite"):
            kwargs["pool_size"] = config.pool_size
            kwargs["max_overflow"] = config.max_overflow
        return cls(config.url, **kwargs)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
