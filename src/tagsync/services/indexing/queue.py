"""
Index queue facade.

Wraps ``IndexQueueRepository`` so every call runs in its own short
transaction. Dispatcher workers and operator tooling use this; tag graph
mutations instead enqueue through ``IndexTransaction`` inside their own
transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.models.enums import QueueEntryState, QueuePriority
from tagsync.models.index_queue import QueueEntry, TierStats
from tagsync.repositories.index_queue_repository import IndexQueueRepository

logger = logging.getLogger(__name__)


class IndexQueue:
    """
    Durable, priority-ordered, deduplicating queue of reindex work.

    Parameters
    ----------
    session_factory : async_sessionmaker[AsyncSession]
        Factory for the short transactions of each call.
    visibility_timeout : float
        Lease duration (seconds) of dequeued entries.
    repository : IndexQueueRepository | None
        Storage; a fresh repository is used when omitted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        visibility_timeout: float = 300.0,
        repository: Optional[IndexQueueRepository] = None,
    ) -> None:
        self._session_factory = session_factory
        self.visibility_timeout = visibility_timeout
        self.repository = repository or IndexQueueRepository()

    async def enqueue(
        self,
        entity_type: str,
        entity_id: int,
        priority: QueuePriority = QueuePriority.DEFAULT,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        async with self._session_factory() as session, session.begin():
            await self.repository.enqueue(
                session, entity_type, entity_id, priority, now=now
            )

    async def enqueue_many(
        self,
        items: Sequence[tuple[str, int, QueuePriority]],
        *,
        now: Optional[datetime] = None,
    ) -> int:
        async with self._session_factory() as session, session.begin():
            return await self.repository.enqueue_many(session, items, now=now)

    async def dequeue_batch(
        self,
        max_size: int,
        max_tiers: int,
        *,
        entity_types: Optional[Collection[str]] = None,
        now: Optional[datetime] = None,
    ) -> list[QueueEntry]:
        """Lease a batch; the lease is committed before this returns."""
        async with self._session_factory() as session, session.begin():
            return await self.repository.dequeue_batch(
                session,
                max_size,
                max_tiers,
                visibility_timeout=self.visibility_timeout,
                entity_types=entity_types,
                now=now,
            )

    async def ack(self, entries: Sequence[QueueEntry]) -> int:
        if not entries:
            return 0
        async with self._session_factory() as session, session.begin():
            return await self.repository.ack(session, entries)

    async def nack(
        self,
        entries: Sequence[QueueEntry],
        *,
        retry_delays: Optional[Mapping[int, float]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        if not entries:
            return 0
        async with self._session_factory() as session, session.begin():
            return await self.repository.nack(
                session, entries, retry_delays=retry_delays, now=now
            )

    async def settle(
        self,
        acked: Sequence[QueueEntry],
        nacked: Sequence[QueueEntry],
        *,
        retry_delays: Optional[Mapping[int, float]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[int, int]:
        """
        Ack and nack the parts of one batch in a single transaction.

        *retry_delays* holds nacked entries back, keyed by entry id.
        """
        async with self._session_factory() as session, session.begin():
            acked_count = await self.repository.ack(session, acked) if acked else 0
            nacked_count = (
                await self.repository.nack(
                    session, nacked, retry_delays=retry_delays, now=now
                )
                if nacked
                else 0
            )
        return acked_count, nacked_count

    async def reclaim_expired(self, *, now: Optional[datetime] = None) -> int:
        async with self._session_factory() as session, session.begin():
            return await self.repository.reclaim_expired(session, now=now)

    async def stats(self, *, now: Optional[datetime] = None) -> list[TierStats]:
        """Pending/in-flight counts and oldest pending age per tier."""
        async with self._session_factory() as session:
            return await self.repository.stats(session, now=now)

    async def entries(
        self,
        *,
        state: Optional[QueueEntryState] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        limit: int = 100,
    ) -> list[QueueEntry]:
        async with self._session_factory() as session:
            return await self.repository.list_entries(
                session,
                state=state,
                entity_type=entity_type,
                entity_id=entity_id,
                limit=limit,
            )

    async def depth(self) -> int:
        async with self._session_factory() as session:
            return await self.repository.depth(session)
