"""
Database configuration and connection management.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tagsync.config.settings import Settings, settings
from tagsync.db.models import Base


class DatabaseManager:
    """Manages database connections and sessions."""

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def get_engine(self) -> AsyncEngine:
        """Get or create async database engine."""
        if self._engine is None:
            engine_kwargs: dict[str, Any] = {
                "echo": self._settings.debug or self._settings.db_log_queries,
                "future": True,
                "pool_pre_ping": True,
            }
            if self._settings.is_postgresql:
                engine_kwargs["pool_recycle"] = 3600

            self._engine = create_async_engine(
                self._settings.database_url, **engine_kwargs
            )
        return self._engine

    def get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create session factory."""
        if self._session_factory is None:
            engine = self.get_engine()
            self._session_factory = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    async def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._session_factory = None

    async def create_tables(self) -> None:
        """Create database tables."""
        engine = self.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
