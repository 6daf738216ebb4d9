"""
Index dispatcher: drains the index queue into the search engine.

Each worker repeatedly leases a batch, reads the current document of every
entity from its ``DocumentSource``, submits upserts and deletions through the
``IndexAdapter`` and then settles the batch: successes are acked, failures
nacked and held back for an exponentially growing delay before redelivery.
When the adapter is unreachable the whole batch is nacked for immediate
retry and the worker backs off exponentially before its next attempt. Only
entity types with a registered source are leased.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.exceptions import (
    AdapterPartialFailure,
    AdapterUnavailable,
    EntityVanished,
    SourceNotRegisteredError,
)
from tagsync.models.enums import IndexAction
from tagsync.models.index_document import IndexItem, ItemResult
from tagsync.models.index_queue import QueueEntry
from tagsync.services.indexing.adapter import IndexAdapter
from tagsync.services.indexing.documents import DocumentSourceRegistry
from tagsync.services.indexing.queue import IndexQueue

logger = logging.getLogger(__name__)

BulkCall = Callable[[Sequence[IndexItem]], Awaitable[list[ItemResult]]]


@dataclass
class DispatchOutcome:
    """Counters of one or more dispatched batches."""

    batches: int = 0
    leased: int = 0
    acked: int = 0
    nacked: int = 0
    upserted: int = 0
    deleted: int = 0
    vanished: int = 0
    unavailable: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return self.leased == 0

    def add(self, other: DispatchOutcome) -> None:
        self.batches += other.batches
        self.leased += other.leased
        self.acked += other.acked
        self.nacked += other.nacked
        self.upserted += other.upserted
        self.deleted += other.deleted
        self.vanished += other.vanished
        self.errors.extend(other.errors)


class IndexDispatcher:
    """
    Worker pool pushing queued entities to the search index.

    Parameters
    ----------
    queue : IndexQueue
        Source of leased work.
    adapter : IndexAdapter
        Search engine boundary.
    sources : DocumentSourceRegistry
        Document readers per entity type.
    session_factory : async_sessionmaker[AsyncSession]
        Factory for the document read sessions.
    batch_size : int
        Maximum entries leased per batch.
    max_tiers : int
        Maximum distinct priority tiers per batch.
    workers : int
        Number of concurrent workers started by ``run``.
    backoff_base, backoff_max : float
        Exponential backoff ``min(backoff_base * 2**failures, backoff_max)``
        seconds. A worker applies it after outages and after batches that
        acked nothing; a nacked entry is held back by it per attempt.
    idle_interval : float
        Sleep between polls of an empty queue.
    """

    def __init__(
        self,
        queue: IndexQueue,
        adapter: IndexAdapter,
        sources: DocumentSourceRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int = 100,
        max_tiers: int = 3,
        workers: int = 2,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        idle_interval: float = 2.0,
    ) -> None:
        self.queue = queue
        self.adapter = adapter
        self.sources = sources
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.max_tiers = max_tiers
        self.workers = workers
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.idle_interval = idle_interval

    def backoff_delay(self, failures: int) -> float:
        """Delay after a failure preceded by *failures* earlier failures."""
        return min(self.backoff_base * (2 ** max(failures, 0)), self.backoff_max)

    # -------------------------------------------------------------------
    # One batch
    # -------------------------------------------------------------------

    async def dispatch_once(self, *, now: Optional[datetime] = None) -> DispatchOutcome:
        """
        Lease, submit and settle one batch.

        Returns
        -------
        DispatchOutcome
            ``idle`` when nothing was leased; ``unavailable`` when the
            adapter could not be reached and the batch was nacked.
        """
        entries = await self.queue.dequeue_batch(
            self.batch_size,
            self.max_tiers,
            entity_types=self.sources.entity_types,
            now=now,
        )
        if not entries:
            return DispatchOutcome()

        outcome = DispatchOutcome(batches=1, leased=len(entries))
        try:
            upserts, deletes, unservable = await self._build_items(entries, outcome)
        except Exception:
            await self.queue.nack(entries)
            raise

        results: list[ItemResult] = []
        try:
            if upserts:
                results.extend(await self._submit(self.adapter.bulk_upsert, upserts))
            if deletes:
                results.extend(await self._submit(self.adapter.bulk_delete, deletes))
        except AdapterUnavailable as e:
            outcome.unavailable = True
            outcome.errors.append(str(e))
            logger.warning("Index adapter unavailable: %s", e)

        succeeded = {r.key for r in results if r.ok}
        for result in results:
            if not result.ok:
                logger.debug(
                    "Index %s:%s failed: %s",
                    result.entity_type,
                    result.entity_id,
                    result.error,
                )
        acked = [e for e in entries if e.key in succeeded and e.key not in unservable]
        acked_keys = {e.key for e in acked}
        nacked = [e for e in entries if e.key not in acked_keys]

        # Entries that failed on their own are held back so they cannot
        # monopolize the head of the queue; an outage retries right away.
        retry_delays = (
            {}
            if outcome.unavailable
            else {e.id: self.backoff_delay(e.attempts - 1) for e in nacked}
        )
        outcome.acked, outcome.nacked = await self.queue.settle(
            acked, nacked, retry_delays=retry_delays, now=now
        )
        outcome.upserted = sum(1 for item in upserts if item.key in succeeded)
        outcome.deleted = sum(1 for item in deletes if item.key in succeeded)
        logger.info(
            "Dispatched batch of %d: %d acked, %d nacked (%d upserts, %d deletes)",
            outcome.leased,
            outcome.acked,
            outcome.nacked,
            outcome.upserted,
            outcome.deleted,
        )
        return outcome

    async def _build_items(
        self, entries: Sequence[QueueEntry], outcome: DispatchOutcome
    ) -> tuple[list[IndexItem], list[IndexItem], set[tuple[str, int]]]:
        """Read current documents; vanished entities become deletions."""
        grouped: dict[str, list[QueueEntry]] = defaultdict(list)
        for entry in entries:
            grouped[entry.entity_type].append(entry)

        upserts: list[IndexItem] = []
        deletes: list[IndexItem] = []
        unservable: set[tuple[str, int]] = set()
        async with self._session_factory() as session:
            for entity_type, group in grouped.items():
                try:
                    source = self.sources.get(entity_type)
                except SourceNotRegisteredError as e:
                    logger.error("%s; leaving %d entries queued", e, len(group))
                    outcome.errors.append(str(e))
                    unservable.update(entry.key for entry in group)
                    continue

                documents = await source.fetch_documents(
                    session, [entry.entity_id for entry in group]
                )
                for entry in group:
                    document = documents.get(entry.entity_id)
                    if document is None:
                        logger.info(
                            "%s; dispatching deletion",
                            EntityVanished(entity_type, entry.entity_id),
                        )
                        outcome.vanished += 1
                        deletes.append(
                            IndexItem(
                                entity_type=entity_type,
                                entity_id=entry.entity_id,
                                action=IndexAction.DELETE,
                            )
                        )
                    else:
                        upserts.append(
                            IndexItem(
                                entity_type=entity_type,
                                entity_id=entry.entity_id,
                                document=document,
                            )
                        )
        return upserts, deletes, unservable

    async def _submit(
        self, call: BulkCall, items: Sequence[IndexItem]
    ) -> list[ItemResult]:
        try:
            return await call(items)
        except AdapterPartialFailure as e:
            logger.warning("%s", e)
            return e.results

    # -------------------------------------------------------------------
    # Worker pool
    # -------------------------------------------------------------------

    async def drain(
        self,
        max_batches: Optional[int] = None,
        *,
        between_batches: Optional[Callable[[], None]] = None,
    ) -> DispatchOutcome:
        """
        Dispatch batches until the queue is idle or the adapter is down.

        Parameters
        ----------
        max_batches : Optional[int]
            Stop after this many batches.
        between_batches : Optional[Callable[[], None]]
            Called before each batch once the previous one is settled; it
            may raise to abandon the drain (e.g. ``ShutdownHandler.check_shutdown``).
        """
        total = DispatchOutcome()
        while max_batches is None or total.batches < max_batches:
            if between_batches is not None:
                between_batches()
            outcome = await self.dispatch_once()
            total.add(outcome)
            if outcome.unavailable:
                total.unavailable = True
                break
            if outcome.idle:
                break
        return total

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> DispatchOutcome:
        """
        Run ``workers`` concurrent workers until *stop_event* is set.

        Returns
        -------
        DispatchOutcome
            Totals across all workers.
        """
        stop = stop_event or asyncio.Event()
        logger.info("Starting %d index dispatcher workers", self.workers)
        tasks = [
            asyncio.create_task(self._worker(i, stop), name=f"index-dispatcher-{i}")
            for i in range(self.workers)
        ]
        total = DispatchOutcome()
        for outcome in await asyncio.gather(*tasks):
            total.add(outcome)
        logger.info(
            "Index dispatcher stopped: %d batches, %d acked, %d nacked",
            total.batches,
            total.acked,
            total.nacked,
        )
        return total

    async def _worker(self, worker_id: int, stop: asyncio.Event) -> DispatchOutcome:
        total = DispatchOutcome()
        failures = 0
        while not stop.is_set():
            try:
                outcome = await self.dispatch_once()
            except Exception:
                logger.exception("Dispatcher worker %d failed on a batch", worker_id)
                outcome = DispatchOutcome(unavailable=True)
            total.add(outcome)

            if outcome.unavailable or (outcome.leased and not outcome.acked):
                delay = self.backoff_delay(failures)
                failures += 1
                logger.warning(
                    "Worker %d backing off %.1fs after %d consecutive failed batches",
                    worker_id,
                    delay,
                    failures,
                )
            elif outcome.idle:
                failures = 0
                delay = self.idle_interval
            else:
                failures = 0
                continue
            await _wait(stop, delay)
        return total


async def _wait(stop: asyncio.Event, delay: float) -> None:
    """Sleep for *delay* seconds or until *stop* is set."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
