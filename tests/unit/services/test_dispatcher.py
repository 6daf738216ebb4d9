"""
Tests for IndexDispatcher with a fake queue, adapter and document source.

Covers settlement of full, partial and failed batches, vanished entities,
unregistered entity types, backoff timing and the worker pool shutdown.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Mapping, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

from tagsync.exceptions import (
    AdapterPartialFailure,
    AdapterUnavailable,
    GracefulShutdownException,
)
from tagsync.models.enums import IndexAction
from tagsync.models.index_document import IndexItem, ItemResult
from tagsync.models.index_queue import QueueEntry
from tagsync.services.indexing.adapter import IndexAdapter
from tagsync.services.indexing.dispatcher import DispatchOutcome, IndexDispatcher
from tagsync.services.indexing.documents import DocumentSource, DocumentSourceRegistry
from tests.factories.queue_entry_factory import create_batch


class FakeQueue:
    """In-memory stand-in recording how batches were settled."""

    def __init__(self, batches: list[list[QueueEntry]]) -> None:
        self._batches = list(batches)
        self.acked: list[QueueEntry] = []
        self.nacked: list[QueueEntry] = []
        self.retry_delays: dict[int, float] = {}
        self.leased_types: list[Any] = []

    async def dequeue_batch(
        self, max_size: int, max_tiers: int, *, entity_types: Any = None, now: Any = None
    ) -> list[QueueEntry]:
        self.leased_types.append(entity_types)
        return self._batches.pop(0) if self._batches else []

    async def settle(
        self,
        acked: Sequence[QueueEntry],
        nacked: Sequence[QueueEntry],
        *,
        retry_delays: Mapping[int, float] | None = None,
        now: Any = None,
    ) -> tuple[int, int]:
        self.acked.extend(acked)
        self.nacked.extend(nacked)
        self.retry_delays.update(retry_delays or {})
        return len(acked), len(nacked)

    async def nack(self, entries: Sequence[QueueEntry], **kwargs: Any) -> int:
        self.nacked.extend(entries)
        return len(entries)


class FakeSource(DocumentSource):
    def __init__(self, entity_type: str, live: set[int]) -> None:
        self.entity_type = entity_type
        self.live = live

    async def fetch_documents(self, session: Any, entity_ids: Sequence[int]) -> dict[int, dict[str, Any]]:
        return {i: {"title": f"Work {i}"} for i in entity_ids if i in self.live}

    async def live_ids(self, session: Any, batch_size: int) -> AsyncIterator[list[int]]:
        yield sorted(self.live)


class FakeAdapter(IndexAdapter):
    """Adapter that fails the configured ids."""

    def __init__(self, failing: set[int] | None = None, unavailable: bool = False) -> None:
        self.failing = failing or set()
        self.unavailable = unavailable
        self.upserts: list[IndexItem] = []
        self.deletes: list[IndexItem] = []

    async def bulk_upsert(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        self.upserts.extend(items)
        return self._results(items)

    async def bulk_delete(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        self.deletes.extend(items)
        return self._results(items)

    def _results(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        if self.unavailable:
            raise AdapterUnavailable("connection refused")
        results = [
            ItemResult(
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                ok=item.entity_id not in self.failing,
                error="mapper_parsing_exception" if item.entity_id in self.failing else None,
            )
            for item in items
        ]
        if any(not r.ok for r in results):
            raise AdapterPartialFailure(results)
        return results


@pytest.fixture
def mock_session_factory() -> MagicMock:
    """Factory whose sessions are usable as async context managers."""
    session = AsyncMock()
    context = AsyncMock()
    context.__aenter__.return_value = session
    context.__aexit__.return_value = None
    return MagicMock(return_value=context)


def make_dispatcher(
    queue: FakeQueue,
    adapter: IndexAdapter,
    session_factory: MagicMock,
    sources: list[DocumentSource] | None = None,
    **kwargs: Any,
) -> IndexDispatcher:
    registry = DocumentSourceRegistry(
        sources if sources is not None else [FakeSource("Work", set(range(1, 100)))]
    )
    return IndexDispatcher(queue, adapter, registry, session_factory, **kwargs)  # type: ignore[arg-type]


class TestDispatchOnce:
    async def test_empty_queue_is_idle(self, mock_session_factory: MagicMock) -> None:
        dispatcher = make_dispatcher(FakeQueue([]), FakeAdapter(), mock_session_factory)
        outcome = await dispatcher.dispatch_once()
        assert outcome.idle
        assert outcome.batches == 0

    async def test_full_success_acks_everything(self, mock_session_factory: MagicMock) -> None:
        batch = create_batch([1, 2, 3])
        queue = FakeQueue([batch])
        adapter = FakeAdapter()

        outcome = await make_dispatcher(queue, adapter, mock_session_factory).dispatch_once()

        assert outcome.acked == 3
        assert outcome.nacked == 0
        assert outcome.upserted == 3
        assert queue.acked == batch
        assert [item.document["title"] for item in adapter.upserts] == [
            "Work 1",
            "Work 2",
            "Work 3",
        ]

    async def test_partial_failure_acks_successes_and_nacks_failures(
        self, mock_session_factory: MagicMock
    ) -> None:
        batch = create_batch(list(range(1, 11)))
        queue = FakeQueue([batch])
        adapter = FakeAdapter(failing={4, 7})

        outcome = await make_dispatcher(queue, adapter, mock_session_factory).dispatch_once()

        assert outcome.acked == 8
        assert outcome.nacked == 2
        assert sorted(e.entity_id for e in queue.nacked) == [4, 7]
        assert not outcome.unavailable

    async def test_unavailable_nacks_whole_batch(self, mock_session_factory: MagicMock) -> None:
        batch = create_batch([1, 2])
        queue = FakeQueue([batch])

        outcome = await make_dispatcher(
            queue, FakeAdapter(unavailable=True), mock_session_factory
        ).dispatch_once()

        assert outcome.unavailable
        assert outcome.acked == 0
        assert queue.nacked == batch
        assert queue.retry_delays == {}

    async def test_failed_items_are_held_back_by_attempt(
        self, mock_session_factory: MagicMock
    ) -> None:
        first, second, third = create_batch([1, 2, 3])
        batch = [first, second.model_copy(update={"attempts": 3}), third]
        queue = FakeQueue([batch])
        dispatcher = make_dispatcher(
            queue,
            FakeAdapter(failing={1, 2}),
            mock_session_factory,
            backoff_base=0.5,
            backoff_max=5.0,
        )

        await dispatcher.dispatch_once()

        assert queue.retry_delays == {1: 0.5, 2: 2.0}

    async def test_leases_only_registered_types(self, mock_session_factory: MagicMock) -> None:
        queue = FakeQueue([])
        dispatcher = make_dispatcher(
            queue,
            FakeAdapter(),
            mock_session_factory,
            sources=[FakeSource("Work", set()), FakeSource("Series", set())],
        )

        await dispatcher.dispatch_once()

        assert queue.leased_types == [["Series", "Work"]]

    async def test_vanished_entity_becomes_delete(self, mock_session_factory: MagicMock) -> None:
        batch = create_batch([1, 2])
        queue = FakeQueue([batch])
        adapter = FakeAdapter()
        dispatcher = make_dispatcher(
            queue, adapter, mock_session_factory, sources=[FakeSource("Work", {1})]
        )

        outcome = await dispatcher.dispatch_once()

        assert outcome.vanished == 1
        assert outcome.deleted == 1
        assert outcome.upserted == 1
        assert [(i.entity_id, i.action) for i in adapter.deletes] == [(2, IndexAction.DELETE)]
        assert outcome.acked == 2

    async def test_unregistered_type_stays_queued_and_held_back(
        self, mock_session_factory: MagicMock
    ) -> None:
        batch = create_batch([1]) + create_batch([5], entity_type="Series")
        queue = FakeQueue([batch])

        outcome = await make_dispatcher(queue, FakeAdapter(), mock_session_factory).dispatch_once()

        assert [e.entity_type for e in queue.acked] == ["Work"]
        assert [e.entity_type for e in queue.nacked] == ["Series"]
        assert list(queue.retry_delays) == [5]
        assert any("Series" in error for error in outcome.errors)

    async def test_missing_result_counts_as_failure(self, mock_session_factory: MagicMock) -> None:
        batch = create_batch([1, 2])
        queue = FakeQueue([batch])
        adapter = AsyncMock(spec=IndexAdapter)
        adapter.bulk_upsert.return_value = [
            ItemResult(entity_type="Work", entity_id=1, ok=True)
        ]

        outcome = await make_dispatcher(queue, adapter, mock_session_factory).dispatch_once()

        assert [e.entity_id for e in queue.acked] == [1]
        assert [e.entity_id for e in queue.nacked] == [2]
        assert outcome.upserted == 1

    async def test_source_error_nacks_and_propagates(self, mock_session_factory: MagicMock) -> None:
        batch = create_batch([1])
        queue = FakeQueue([batch])
        broken = FakeSource("Work", set())
        broken.fetch_documents = AsyncMock(side_effect=RuntimeError("db gone"))  # type: ignore[method-assign]

        with pytest.raises(RuntimeError):
            await make_dispatcher(
                queue, FakeAdapter(), mock_session_factory, sources=[broken]
            ).dispatch_once()

        assert queue.nacked == batch


class TestDrain:
    async def test_drains_until_idle(self, mock_session_factory: MagicMock) -> None:
        queue = FakeQueue([create_batch([1, 2]), create_batch([3])])

        outcome = await make_dispatcher(queue, FakeAdapter(), mock_session_factory).drain()

        assert outcome.batches == 2
        assert outcome.acked == 3

    async def test_stops_on_outage(self, mock_session_factory: MagicMock) -> None:
        queue = FakeQueue([create_batch([1]), create_batch([2])])

        outcome = await make_dispatcher(
            queue, FakeAdapter(unavailable=True), mock_session_factory
        ).drain()

        assert outcome.unavailable
        assert outcome.batches == 1

    async def test_max_batches(self, mock_session_factory: MagicMock) -> None:
        queue = FakeQueue([create_batch([1]), create_batch([2]), create_batch([3])])

        outcome = await make_dispatcher(queue, FakeAdapter(), mock_session_factory).drain(
            max_batches=2
        )

        assert outcome.batches == 2

    async def test_between_batches_can_abandon_the_drain(
        self, mock_session_factory: MagicMock
    ) -> None:
        queue = FakeQueue([create_batch([1]), create_batch([2])])
        calls = 0

        def interrupt_after_first() -> None:
            nonlocal calls
            calls += 1
            if calls > 1:
                raise GracefulShutdownException("stop", signal_received="SIGTERM")

        with pytest.raises(GracefulShutdownException):
            await make_dispatcher(queue, FakeAdapter(), mock_session_factory).drain(
                between_batches=interrupt_after_first
            )

        assert [e.entity_id for e in queue.acked] == [1]
        assert queue.nacked == []


class TestBackoff:
    @pytest.mark.parametrize(
        "failures,expected", [(0, 0.5), (1, 1.0), (2, 2.0), (3, 4.0), (10, 5.0)]
    )
    def test_exponential_with_cap(
        self, mock_session_factory: MagicMock, failures: int, expected: float
    ) -> None:
        dispatcher = make_dispatcher(
            FakeQueue([]),
            FakeAdapter(),
            mock_session_factory,
            backoff_base=0.5,
            backoff_max=5.0,
        )
        assert dispatcher.backoff_delay(failures) == expected


class TestRun:
    async def test_workers_stop_when_event_set(self, mock_session_factory: MagicMock) -> None:
        queue = FakeQueue([create_batch([1, 2])])
        dispatcher = make_dispatcher(
            queue, FakeAdapter(), mock_session_factory, workers=2, idle_interval=0.01
        )
        stop = asyncio.Event()

        async def _stop_soon() -> None:
            await asyncio.sleep(0.05)
            stop.set()

        outcome, _ = await asyncio.gather(dispatcher.run(stop), _stop_soon())

        assert outcome.acked == 2
        assert outcome.batches == 1

    async def test_worker_backs_off_when_a_batch_acks_nothing(
        self, mock_session_factory: MagicMock
    ) -> None:
        queue = FakeQueue([create_batch([4]) for _ in range(50)])
        dispatcher = make_dispatcher(
            queue,
            FakeAdapter(failing={4}),
            mock_session_factory,
            workers=1,
            backoff_base=10.0,
            idle_interval=0.01,
        )
        stop = asyncio.Event()

        async def _stop_soon() -> None:
            await asyncio.sleep(0.05)
            stop.set()

        outcome, _ = await asyncio.gather(dispatcher.run(stop), _stop_soon())

        assert outcome.batches == 1
        assert (outcome.acked, outcome.nacked) == (0, 1)

    async def test_worker_survives_unexpected_errors(
        self, mock_session_factory: MagicMock
    ) -> None:
        dispatcher = make_dispatcher(
            FakeQueue([]),
            FakeAdapter(),
            mock_session_factory,
            workers=1,
            backoff_base=0.01,
            backoff_max=0.01,
        )
        dispatcher.queue = MagicMock()
        dispatcher.queue.dequeue_batch = AsyncMock(side_effect=RuntimeError("boom"))
        stop = asyncio.Event()

        async def _stop_soon() -> None:
            await asyncio.sleep(0.05)
            stop.set()

        outcome, _ = await asyncio.gather(dispatcher.run(stop), _stop_soon())

        assert outcome.acked == 0
        assert dispatcher.queue.dequeue_batch.await_count >= 2


def test_outcome_add() -> None:
    total = DispatchOutcome()
    total.add(DispatchOutcome(batches=1, leased=3, acked=2, nacked=1, errors=["x"]))
    total.add(DispatchOutcome(batches=1, leased=1, acked=1))
    assert (total.batches, total.leased, total.acked, total.nacked) == (2, 4, 3, 1)
    assert total.errors == ["x"]
