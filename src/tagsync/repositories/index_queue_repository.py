"""
Index queue repository.

A durable, multi-priority, deduplicating work queue stored in the
``index_queue_entries`` table. Each entity has at most one *pending* row and
at most one *in-flight* row:

- ``enqueue`` upserts the pending row, keeping the higher priority and the
  earliest ``enqueued_at``.
- ``dequeue_batch`` leases pending rows whose entity has no in-flight row, so
  an enqueue that arrives mid-flight waits as a follow-up instead of being
  merged into the lease.
- ``ack`` deletes leased rows; ``nack`` and lease expiry return them to
  pending, folding them into a follow-up row when one exists.
- A nack may hold a row back until ``available_at``; a later enqueue of the
  same entity makes it eligible again at once.

Leases are matched on ``(id, lease_id)`` so a worker whose lease expired can
no longer acknowledge a row that has been redelivered to someone else.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Collection, Iterable, Mapping, Optional, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from tagsync.db.models import IndexQueueEntry as IndexQueueEntryDB
from tagsync.models.enums import QueueEntryState, QueuePriority
from tagsync.models.index_effect import IndexEffect
from tagsync.models.index_queue import QueueEntry, TierStats
from tagsync.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

_PENDING = QueueEntryState.PENDING.value
_IN_FLIGHT = QueueEntryState.IN_FLIGHT.value

# Rows per multi-VALUES upsert statement
_UPSERT_CHUNK = 500


class IndexQueueRepository:
    """Repository implementing the index queue protocol over one session."""

    # -------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------

    async def enqueue(
        self,
        session: AsyncSession,
        entity_type: str,
        entity_id: int,
        priority: QueuePriority = QueuePriority.DEFAULT,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Dedup-upsert a pending entry for ``(entity_type, entity_id)``.

        Parameters
        ----------
        session : AsyncSession
            Database session (caller manages the transaction).
        entity_type : str
            Entity kind, e.g. ``"Work"``.
        entity_id : int
            Entity primary key.
        priority : QueuePriority
            Requested tier; an existing pending entry keeps the max of both.
        now : Optional[datetime]
            Enqueue timestamp override (tests).
        """
        await self.enqueue_many(
            session, [(entity_type, entity_id, priority)], now=now
        )

    async def enqueue_effects(
        self,
        session: AsyncSession,
        effects: Iterable[IndexEffect],
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Enqueue the entities named by index effects; returns rows upserted."""
        return await self.enqueue_many(
            session,
            [
                (e.entity.taggable_type.value, e.entity.taggable_id, e.priority)
                for e in effects
            ],
            now=now,
        )

    async def enqueue_many(
        self,
        session: AsyncSession,
        items: Iterable[tuple[str, int, QueuePriority]],
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Bulk dedup-upsert of pending entries.

        Duplicate keys within *items* are collapsed to their highest
        priority first, and rows are written in key order so concurrent
        callers lock rows in the same sequence.
        """
        timestamp = now or utcnow()
        collapsed: dict[tuple[str, int], int] = {}
        for entity_type, entity_id, priority in items:
            key = (entity_type, int(entity_id))
            collapsed[key] = max(collapsed.get(key, int(priority)), int(priority))
        if not collapsed:
            return 0

        rows = [
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "priority": priority,
                "state": _PENDING,
                "enqueued_at": timestamp,
                "attempts": 0,
            }
            for (entity_type, entity_id), priority in sorted(collapsed.items())
        ]
        dialect = session.get_bind().dialect.name
        for start in range(0, len(rows), _UPSERT_CHUNK):
            chunk = rows[start : start + _UPSERT_CHUNK]
            if dialect in ("postgresql", "sqlite"):
                await self._upsert_native(session, dialect, chunk)
            else:
                for row in chunk:
                    await self._upsert_portable(session, row)
        return len(rows)

    async def _upsert_native(
        self, session: AsyncSession, dialect: str, rows: list[dict[str, Any]]
    ) -> None:
        if dialect == "postgresql":
            stmt = postgresql.insert(IndexQueueEntryDB).values(rows)
            greatest = func.greatest
        else:
            stmt = sqlite.insert(IndexQueueEntryDB).values(rows)
            greatest = func.max  # two-argument scalar max
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_type", "entity_id", "state"],
            set_={
                "priority": greatest(
                    IndexQueueEntryDB.priority, stmt.excluded.priority
                ),
                "available_at": None,
            },
        )
        await session.execute(stmt)

    async def _upsert_portable(
        self, session: AsyncSession, row: dict[str, Any]
    ) -> None:
        existing = await self._pending_row(
            session, row["entity_type"], row["entity_id"]
        )
        if existing is None:
            session.add(IndexQueueEntryDB(**row))
        else:
            existing.priority = max(existing.priority, row["priority"])
            existing.available_at = None
        await session.flush()

    # -------------------------------------------------------------------
    # Dequeue / ack / nack
    # -------------------------------------------------------------------

    async def dequeue_batch(
        self,
        session: AsyncSession,
        max_size: int,
        max_tiers: int,
        *,
        visibility_timeout: float,
        entity_types: Optional[Collection[str]] = None,
        now: Optional[datetime] = None,
    ) -> list[QueueEntry]:
        """
        Lease up to *max_size* pending entries for dispatch.

        Expired leases are reclaimed first. Entries come highest priority tier
        first and FIFO by ``enqueued_at`` within a tier, drawn from at most
        *max_tiers* distinct tiers. Rows held back by ``available_at`` are
        skipped. Leased rows stay in the table as ``in_flight`` until acked,
        nacked, or their lease expires.

        Parameters
        ----------
        session : AsyncSession
            Database session; commit it to make the lease visible.
        max_size : int
            Maximum number of entries returned.
        max_tiers : int
            Maximum number of distinct priority tiers in one batch.
        visibility_timeout : float
            Lease duration in seconds.
        entity_types : Optional[Collection[str]]
            Lease only these entity types; ``None`` leases any type.
        now : Optional[datetime]
            Clock override (tests).

        Returns
        -------
        list[QueueEntry]
            The leased entries, all sharing one ``lease_id``.
        """
        if max_size < 1 or max_tiers < 1:
            return []
        if entity_types is not None and not entity_types:
            return []
        timestamp = now or utcnow()
        await self.reclaim_expired(session, now=timestamp)

        in_flight = aliased(IndexQueueEntryDB)
        busy = (
            select(in_flight.id)
            .where(
                in_flight.entity_type == IndexQueueEntryDB.entity_type,
                in_flight.entity_id == IndexQueueEntryDB.entity_id,
                in_flight.state == _IN_FLIGHT,
            )
            .exists()
        )
        query = select(IndexQueueEntryDB).where(
            IndexQueueEntryDB.state == _PENDING,
            or_(
                IndexQueueEntryDB.available_at.is_(None),
                IndexQueueEntryDB.available_at <= timestamp,
            ),
            ~busy,
        )
        if entity_types is not None:
            query = query.where(IndexQueueEntryDB.entity_type.in_(list(entity_types)))
        result = await session.execute(
            query.order_by(
                IndexQueueEntryDB.priority.desc(),
                IndexQueueEntryDB.enqueued_at,
                IndexQueueEntryDB.id,
            )
            .limit(max_size)
            .with_for_update(skip_locked=True, of=IndexQueueEntryDB)
        )
        candidates = list(result.scalars().all())

        selected: list[IndexQueueEntryDB] = []
        tiers: list[int] = []
        for row in candidates:
            if row.priority not in tiers:
                if len(tiers) == max_tiers:
                    break
                tiers.append(row.priority)
            selected.append(row)
        if not selected:
            return []

        lease_id = uuid.uuid4()
        leased_until = timestamp + timedelta(seconds=visibility_timeout)
        for row in selected:
            row.state = _IN_FLIGHT
            row.lease_id = lease_id
            row.leased_until = leased_until
            row.attempts = (row.attempts or 0) + 1
        await session.flush()

        logger.debug(
            "Leased %d queue entries (lease=%s, tiers=%s)",
            len(selected),
            lease_id,
            tiers,
        )
        return [QueueEntry.model_validate(row) for row in selected]

    async def ack(self, session: AsyncSession, entries: Sequence[QueueEntry]) -> int:
        """
        Permanently remove acknowledged in-flight entries.

        Returns
        -------
        int
            Number of rows removed. Entries whose lease no longer matches
            (expired and redelivered) are skipped.
        """
        removed = 0
        for lease_id, ids in _group_by_lease(entries).items():
            result = await session.execute(
                delete(IndexQueueEntryDB)
                .where(
                    IndexQueueEntryDB.id.in_(ids),
                    IndexQueueEntryDB.lease_id == lease_id,
                    IndexQueueEntryDB.state == _IN_FLIGHT,
                )
                .execution_options(synchronize_session=False)
            )
            removed += result.rowcount or 0
        if removed != len(entries):
            logger.warning(
                "Acked %d of %d entries; the rest had lost their lease",
                removed,
                len(entries),
            )
        return removed

    async def nack(
        self,
        session: AsyncSession,
        entries: Sequence[QueueEntry],
        *,
        retry_delays: Optional[Mapping[int, float]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Return in-flight entries to pending with their original priority.

        Parameters
        ----------
        session : AsyncSession
            Database session (caller manages the transaction).
        entries : Sequence[QueueEntry]
            Entries leased by the caller.
        retry_delays : Optional[Mapping[int, float]]
            Seconds to hold each entry back, keyed by entry id. Entries
            without a positive delay are eligible again immediately.
        now : Optional[datetime]
            Clock override (tests).

        Returns
        -------
        int
            Number of entries returned to the queue.
        """
        timestamp = now or utcnow()
        delays = retry_delays or {}
        returned = 0
        for lease_id, ids in _group_by_lease(entries).items():
            result = await session.execute(
                select(IndexQueueEntryDB)
                .where(
                    IndexQueueEntryDB.id.in_(ids),
                    IndexQueueEntryDB.lease_id == lease_id,
                    IndexQueueEntryDB.state == _IN_FLIGHT,
                )
                .order_by(IndexQueueEntryDB.id)
                .with_for_update()
            )
            for row in result.scalars().all():
                delay = delays.get(row.id, 0.0)
                available_at = (
                    timestamp + timedelta(seconds=delay) if delay > 0 else None
                )
                await self._return_to_pending(session, row, available_at)
                returned += 1
        return returned

    async def reclaim_expired(
        self, session: AsyncSession, *, now: Optional[datetime] = None
    ) -> int:
        """Return in-flight entries whose lease has expired to pending."""
        timestamp = now or utcnow()
        result = await session.execute(
            select(IndexQueueEntryDB)
            .where(
                IndexQueueEntryDB.state == _IN_FLIGHT,
                IndexQueueEntryDB.leased_until < timestamp,
            )
            .order_by(IndexQueueEntryDB.id)
            .with_for_update(skip_locked=True)
        )
        expired = list(result.scalars().all())
        for row in expired:
            await self._return_to_pending(session, row)
        if expired:
            logger.warning(
                "Reclaimed %d queue entries with expired leases", len(expired)
            )
        return len(expired)

    async def _return_to_pending(
        self,
        session: AsyncSession,
        row: IndexQueueEntryDB,
        available_at: Optional[datetime] = None,
    ) -> None:
        follow_up = await self._pending_row(
            session, row.entity_type, row.entity_id, lock=True
        )
        if follow_up is not None:
            # The follow-up stands for a newer change and stays eligible
            follow_up.priority = max(follow_up.priority, row.priority)
            follow_up.enqueued_at = min(
                as_utc(follow_up.enqueued_at), as_utc(row.enqueued_at)
            )
            follow_up.attempts = max(follow_up.attempts or 0, row.attempts or 0)
            await session.delete(row)
        else:
            row.state = _PENDING
            row.lease_id = None
            row.leased_until = None
            row.available_at = available_at
        await session.flush()

    async def _pending_row(
        self,
        session: AsyncSession,
        entity_type: str,
        entity_id: int,
        *,
        lock: bool = False,
    ) -> Optional[IndexQueueEntryDB]:
        query = select(IndexQueueEntryDB).where(
            IndexQueueEntryDB.entity_type == entity_type,
            IndexQueueEntryDB.entity_id == entity_id,
            IndexQueueEntryDB.state == _PENDING,
        )
        if lock:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------

    async def list_entries(
        self,
        session: AsyncSession,
        *,
        state: Optional[QueueEntryState] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        limit: int = 100,
    ) -> list[QueueEntry]:
        """List entries in dispatch order with optional filters."""
        query = select(IndexQueueEntryDB)
        if state is not None:
            query = query.where(IndexQueueEntryDB.state == state.value)
        if entity_type is not None:
            query = query.where(IndexQueueEntryDB.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(IndexQueueEntryDB.entity_id == entity_id)
        result = await session.execute(
            query.order_by(
                IndexQueueEntryDB.priority.desc(),
                IndexQueueEntryDB.enqueued_at,
                IndexQueueEntryDB.id,
            ).limit(limit)
        )
        return [QueueEntry.model_validate(row) for row in result.scalars().all()]

    async def stats(
        self, session: AsyncSession, *, now: Optional[datetime] = None
    ) -> list[TierStats]:
        """
        Queue depth and age per priority tier, highest tier first.

        ``oldest_age_seconds`` measures the oldest *pending* entry of the tier,
        which is what back-pressure monitoring alerts on.
        """
        timestamp = now or utcnow()
        result = await session.execute(
            select(
                IndexQueueEntryDB.priority,
                IndexQueueEntryDB.state,
                func.count(),
                func.min(IndexQueueEntryDB.enqueued_at),
            ).group_by(IndexQueueEntryDB.priority, IndexQueueEntryDB.state)
        )
        tiers = {p: TierStats(priority=p) for p in QueuePriority}
        for priority, state, count, oldest in result.all():
            tier_key = QueuePriority(priority)
            current = tiers[tier_key]
            if state == _PENDING:
                oldest_at = as_utc(oldest)
                age = (
                    max((timestamp - oldest_at).total_seconds(), 0.0)
                    if oldest_at is not None
                    else 0.0
                )
                tiers[tier_key] = current.model_copy(
                    update={
                        "pending": count,
                        "oldest_enqueued_at": oldest_at,
                        "oldest_age_seconds": age,
                    }
                )
            else:
                tiers[tier_key] = current.model_copy(update={"in_flight": count})
        return [tiers[p] for p in sorted(QueuePriority, reverse=True)]

    async def depth(self, session: AsyncSession) -> int:
        """Total number of rows, pending and in-flight."""
        result = await session.execute(
            select(func.count()).select_from(IndexQueueEntryDB)
        )
        return result.scalar() or 0


def _group_by_lease(entries: Sequence[QueueEntry]) -> dict[uuid.UUID, list[int]]:
    grouped: dict[uuid.UUID, list[int]] = {}
    for entry in entries:
        if entry.lease_id is None:
            continue
        grouped.setdefault(entry.lease_id, []).append(entry.id)
    return grouped
