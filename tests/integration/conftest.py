"""
Shared fixtures for integration tests.

Integration tests run the real repositories and services against a SQLite
database file created per test by the root ``engine`` fixture.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.models.enums import TaggableType
from tagsync.services.indexing.documents import (
    DocumentSourceRegistry,
    SQLAlchemyDocumentSource,
)
from tagsync.services.indexing.queue import IndexQueue
from tagsync.services.unit_of_work import IndexTransaction
from tests.content import Series, Work


@pytest.fixture
def new_tx(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], IndexTransaction]:
    """Factory of index transactions on the test database."""
    return lambda: IndexTransaction(session_factory)


@pytest.fixture
def index_queue(session_factory: async_sessionmaker[AsyncSession]) -> IndexQueue:
    return IndexQueue(session_factory, visibility_timeout=300.0)


@pytest.fixture
def sources() -> DocumentSourceRegistry:
    return DocumentSourceRegistry(
        [
            SQLAlchemyDocumentSource(TaggableType.WORK, Work),
            SQLAlchemyDocumentSource(TaggableType.SERIES, Series),
        ]
    )


@pytest.fixture
def add_works(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[list[Work]]]:
    """Insert works with the given ids (titles derived from the id)."""

    async def _add(*ids: int) -> list[Work]:
        works = [Work(id=i, title=f"Work {i}") for i in ids]
        async with session_factory() as session, session.begin():
            session.add_all(works)
        return works

    return _add
