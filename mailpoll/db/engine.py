"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from mailpoll.config import DatabaseConfig

from .models import Base


def make_engine(config: DatabaseConfig) -> AsyncEngine:
    if config.url.startswith("sqlite"):
        # A single shared connection keeps in-memory databases alive
        return create_async_engine(
            config.url,
            echo=config.echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Database:
    """Holds the engine and its session factory.

    Created once at startup and shared by the registry and the stores.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.engine = make_engine(config)
        self.session = make_session_factory(self.engine)

    async def init_models(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
