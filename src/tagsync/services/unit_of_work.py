"""
Transaction boundary that commits index effects with the data change.

Mutations of the tag graph return ``MutationResult`` objects carrying the
index effects they imply. ``IndexTransaction`` owns one ``AsyncSession``,
collects those effects, and writes them to the index queue inside the same
transaction immediately before commit. If the body raises, the transaction
is rolled back and no effect is written.

Examples
--------
>>> async with IndexTransaction(session_factory) as tx:
...     tags = tx.apply(await graph.attach_tags(tx.session, work, ["Fluff"]))
...     tx.needs_reindex(EntityRef.work(7))
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import QueuePriority
from tagsync.models.index_effect import IndexEffect, MutationResult, collapse_effects
from tagsync.repositories.index_queue_repository import IndexQueueRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IndexTransaction:
    """
    Async context manager: one session, one transaction, queued effects.

    Parameters
    ----------
    session_factory : async_sessionmaker[AsyncSession]
        Factory used to open the session.
    queue_repo : IndexQueueRepository | None
        Queue writer; a fresh repository is used when omitted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue_repo: Optional[IndexQueueRepository] = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue_repo = queue_repo or IndexQueueRepository()
        self._session: Optional[AsyncSession] = None
        self._effects: list[IndexEffect] = []
        self.committed_effects: list[IndexEffect] = []

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("IndexTransaction is not active")
        return self._session

    @property
    def effects(self) -> list[IndexEffect]:
        """Effects recorded so far, collapsed to one per entity."""
        return collapse_effects(self._effects)

    def record(self, *effects: IndexEffect) -> None:
        self._effects.extend(effects)

    def apply(self, result: MutationResult[T]) -> T:
        """Record the effects of a mutation and return its value."""
        self._effects.extend(result.effects)
        return result.value

    def needs_reindex(
        self, entity: EntityRef, priority: QueuePriority = QueuePriority.DEFAULT
    ) -> None:
        """
        Mark *entity* stale after a change to its non-tag searchable fields.

        Content entity code calls this whenever it edits a field that appears
        in the search document, since tag changes alone do not capture it.
        """
        self._effects.append(IndexEffect(entity, priority))

    async def __aenter__(self) -> IndexTransaction:
        self._session = self._session_factory()
        self._effects = []
        self.committed_effects = []
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        session = self.session
        try:
            if exc_type is not None:
                await session.rollback()
                if self._effects:
                    logger.debug(
                        "Discarded %d index effects on rollback", len(self._effects)
                    )
                return
            effects = self.effects
            try:
                if effects:
                    await self._queue_repo.enqueue_effects(session, effects)
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            self.committed_effects = effects
            if effects:
                logger.debug("Committed with %d index effects", len(effects))
        finally:
            self._effects = []
            await session.close()
            self._session = None
