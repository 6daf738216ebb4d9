"""
Full reindex of one entity type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.models.enums import QueuePriority
from tagsync.repositories.index_queue_repository import IndexQueueRepository
from tagsync.services.indexing.documents import DocumentSourceRegistry

logger = logging.getLogger(__name__)


@dataclass
class ReindexResult:
    entity_type: str
    priority: QueuePriority
    enqueued: int
    pages: int


class ReindexService:
    """
    Enqueue every live entity of a type, e.g. after a mapping change.

    Ids are read page by page from the type's ``DocumentSource`` and each page
    is enqueued in its own transaction, so a rebuild of millions of rows
    never holds one long transaction. Entities that already have a pending
    entry keep the higher of the two priorities.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sources: DocumentSourceRegistry,
        *,
        page_size: int = 1000,
        queue_repo: IndexQueueRepository | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sources = sources
        self.page_size = page_size
        self._queue_repo = queue_repo or IndexQueueRepository()

    async def reindex_all(
        self,
        entity_type: str,
        priority: QueuePriority = QueuePriority.LOW,
    ) -> ReindexResult:
        """
        Enqueue all live ids of *entity_type* at *priority*.

        Raises
        ------
        SourceNotRegisteredError
            If no document source serves *entity_type*.
        """
        source = self._sources.get(entity_type)
        enqueued = 0
        pages = 0
        async with self._session_factory() as read_session:
            async for page in source.live_ids(read_session, self.page_size):
                async with self._session_factory() as session, session.begin():
                    enqueued += await self._queue_repo.enqueue_many(
                        session, [(entity_type, entity_id, priority) for entity_id in page]
                    )
                pages += 1
                logger.debug("Reindex %s: page %d, %d ids", entity_type, pages, len(page))

        logger.info(
            "Enqueued %d %s entities for reindex at %s priority",
            enqueued,
            entity_type,
            priority.name,
        )
        return ReindexResult(entity_type, priority, enqueued, pages)
