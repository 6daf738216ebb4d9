"""
Pytest configuration and fixtures for tagsync tests.
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tagsync.config.settings import Settings
from tagsync.db.models import Base
from tagsync.repositories import (
    IndexQueueRepository,
    TaggingRepository,
    TagOperationLogRepository,
    TagParentRepository,
    TagRepository,
)
from tagsync.services.tag_graph import TagGraphService
from tests.content import ContentBase


def sqlite_url(directory: Path) -> str:
    return f"sqlite+aiosqlite:///{directory / 'tagsync.db'}"


@pytest.fixture
def mock_settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        database_url=sqlite_url(tmp_path),
        search_url="http://search.test:9200",
        dispatcher_batch_size=50,
        dispatcher_workers=1,
    )


@pytest.fixture
async def engine(mock_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Async engine with the tagsync schema and the test content tables.

    Each test gets its own database file for isolation.
    """
    engine = create_async_engine(mock_settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(ContentBase.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session rolled back after the test."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def graph() -> TagGraphService:
    """Tag graph service over real repositories."""
    return TagGraphService(
        tag_repo=TagRepository(),
        parent_repo=TagParentRepository(),
        tagging_repo=TaggingRepository(),
        operation_log_repo=TagOperationLogRepository(),
    )


@pytest.fixture
def queue_repo() -> IndexQueueRepository:
    return IndexQueueRepository()
