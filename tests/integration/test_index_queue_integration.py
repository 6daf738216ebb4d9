"""
Integration tests for the index queue protocol on a real database.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from tagsync.models.enums import QueueEntryState, QueuePriority
from tagsync.services.indexing.queue import IndexQueue

T0 = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class TestEnqueue:
    async def test_duplicate_keeps_higher_priority(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, QueuePriority.LOW, now=at(0))
        await index_queue.enqueue("Work", 1, QueuePriority.HIGH, now=at(5))
        await index_queue.enqueue("Work", 1, QueuePriority.DEFAULT, now=at(10))

        entries = await index_queue.entries()

        assert len(entries) == 1
        assert entries[0].priority is QueuePriority.HIGH
        assert entries[0].enqueued_at == at(0)
        assert entries[0].state is QueueEntryState.PENDING

    async def test_enqueue_many_collapses_within_batch(self, index_queue: IndexQueue) -> None:
        written = await index_queue.enqueue_many(
            [
                ("Work", 1, QueuePriority.LOW),
                ("Work", 2, QueuePriority.DEFAULT),
                ("Work", 1, QueuePriority.DEFAULT),
                ("Series", 1, QueuePriority.LOW),
            ],
            now=at(0),
        )

        assert written == 3
        entries = await index_queue.entries()
        assert sorted((e.entity_type, e.entity_id, e.priority) for e in entries) == [
            ("Series", 1, QueuePriority.LOW),
            ("Work", 1, QueuePriority.DEFAULT),
            ("Work", 2, QueuePriority.DEFAULT),
        ]


class TestDequeue:
    async def test_priority_then_fifo(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, QueuePriority.LOW, now=at(0))
        await index_queue.enqueue("Work", 2, QueuePriority.DEFAULT, now=at(2))
        await index_queue.enqueue("Work", 3, QueuePriority.HIGH, now=at(3))
        await index_queue.enqueue("Work", 4, QueuePriority.DEFAULT, now=at(1))

        batch = await index_queue.dequeue_batch(10, 3, now=at(10))

        assert [e.entity_id for e in batch] == [3, 4, 2, 1]
        assert len({e.lease_id for e in batch}) == 1
        assert all(e.state is QueueEntryState.IN_FLIGHT for e in batch)
        assert all(e.attempts == 1 for e in batch)
        assert batch[0].leased_until == at(310)

    async def test_max_size_and_max_tiers(self, index_queue: IndexQueue) -> None:
        for entity_id, priority in ((1, QueuePriority.HIGH), (2, QueuePriority.DEFAULT), (3, QueuePriority.LOW)):
            await index_queue.enqueue("Work", entity_id, priority, now=at(0))

        first = await index_queue.dequeue_batch(10, 2, now=at(1))
        second = await index_queue.dequeue_batch(1, 3, now=at(2))

        assert [e.entity_id for e in first] == [1, 2]
        assert [e.entity_id for e in second] == [3]
        assert await index_queue.dequeue_batch(10, 3, now=at(3)) == []

    async def test_ack_removes_entries(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, now=at(0))
        batch = await index_queue.dequeue_batch(10, 3, now=at(1))

        assert await index_queue.ack(batch) == 1
        assert await index_queue.depth() == 0


class TestFollowUps:
    async def test_enqueue_during_flight_waits_for_ack(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, QueuePriority.DEFAULT, now=at(0))
        in_flight = await index_queue.dequeue_batch(10, 3, now=at(1))

        await index_queue.enqueue("Work", 1, QueuePriority.LOW, now=at(2))

        assert await index_queue.depth() == 2
        assert await index_queue.dequeue_batch(10, 3, now=at(3)) == []

        await index_queue.ack(in_flight)
        follow_up = await index_queue.dequeue_batch(10, 3, now=at(4))
        assert [(e.entity_id, e.priority) for e in follow_up] == [(1, QueuePriority.LOW)]

    async def test_nack_folds_into_follow_up(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, QueuePriority.HIGH, now=at(0))
        in_flight = await index_queue.dequeue_batch(10, 3, now=at(1))
        await index_queue.enqueue("Work", 1, QueuePriority.LOW, now=at(2))

        assert await index_queue.nack(in_flight) == 1

        entries = await index_queue.entries()
        assert len(entries) == 1
        assert entries[0].state is QueueEntryState.PENDING
        assert entries[0].priority is QueuePriority.HIGH
        assert entries[0].enqueued_at == at(0)
        assert entries[0].attempts == 1

    async def test_nack_returns_to_pending(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, QueuePriority.DEFAULT, now=at(0))
        in_flight = await index_queue.dequeue_batch(10, 3, now=at(1))

        await index_queue.nack(in_flight)
        redelivered = await index_queue.dequeue_batch(10, 3, now=at(2))

        assert [e.entity_id for e in redelivered] == [1]
        assert redelivered[0].attempts == 2
        assert redelivered[0].lease_id != in_flight[0].lease_id


class TestRetryDelay:
    async def test_delayed_nack_yields_to_lower_tiers(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 9, QueuePriority.HIGH, now=at(0))
        await index_queue.enqueue("Work", 1, QueuePriority.DEFAULT, now=at(0))
        poison = await index_queue.dequeue_batch(10, 1, now=at(1))
        assert [e.entity_id for e in poison] == [9]

        await index_queue.nack(poison, retry_delays={poison[0].id: 30.0}, now=at(1))

        assert [e.entity_id for e in await index_queue.dequeue_batch(10, 1, now=at(2))] == [1]
        held = await index_queue.entries(entity_id=9)
        assert held[0].state is QueueEntryState.PENDING
        assert held[0].available_at == at(31)
        assert await index_queue.dequeue_batch(10, 3, now=at(30)) == []
        retried = await index_queue.dequeue_batch(10, 3, now=at(31))
        assert [(e.entity_id, e.attempts) for e in retried] == [(9, 2)]

    async def test_new_enqueue_makes_delayed_entry_eligible(
        self, index_queue: IndexQueue
    ) -> None:
        await index_queue.enqueue("Work", 1, QueuePriority.LOW, now=at(0))
        in_flight = await index_queue.dequeue_batch(10, 3, now=at(1))
        await index_queue.nack(in_flight, retry_delays={in_flight[0].id: 600.0}, now=at(1))

        await index_queue.enqueue("Work", 1, QueuePriority.DEFAULT, now=at(5))

        batch = await index_queue.dequeue_batch(10, 3, now=at(6))
        assert [(e.entity_id, e.priority) for e in batch] == [(1, QueuePriority.DEFAULT)]

    async def test_only_requested_entity_types_are_leased(
        self, index_queue: IndexQueue
    ) -> None:
        await index_queue.enqueue("Series", 5, QueuePriority.HIGH, now=at(0))
        await index_queue.enqueue("Work", 1, QueuePriority.LOW, now=at(0))

        batch = await index_queue.dequeue_batch(10, 1, entity_types=["Work"], now=at(1))

        assert [e.key for e in batch] == [("Work", 1)]
        assert await index_queue.dequeue_batch(10, 3, entity_types=[], now=at(2)) == []
        series = await index_queue.entries(entity_type="Series")
        assert series[0].state is QueueEntryState.PENDING
        assert series[0].attempts == 0


class TestVisibilityTimeout:
    async def test_expired_lease_is_redelivered(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue("Work", 1, now=at(0))
        stale = await index_queue.dequeue_batch(10, 3, now=at(0))

        # Worker crashed; nothing acked before the 300s lease ran out
        assert await index_queue.dequeue_batch(10, 3, now=at(200)) == []
        redelivered = await index_queue.dequeue_batch(10, 3, now=at(400))

        assert [e.entity_id for e in redelivered] == [1]
        assert redelivered[0].lease_id != stale[0].lease_id

        assert await index_queue.ack(stale) == 0
        assert await index_queue.depth() == 1
        assert await index_queue.ack(redelivered) == 1
        assert await index_queue.depth() == 0

    async def test_reclaim_expired(self, index_queue: IndexQueue) -> None:
        await index_queue.enqueue_many(
            [("Work", 1, QueuePriority.DEFAULT), ("Work", 2, QueuePriority.DEFAULT)],
            now=at(0),
        )
        await index_queue.dequeue_batch(1, 3, now=at(0))
        await index_queue.dequeue_batch(1, 3, now=at(100))

        assert await index_queue.reclaim_expired(now=at(350)) == 1

        pending = await index_queue.entries(state=QueueEntryState.PENDING)
        assert [e.entity_id for e in pending] == [1]


async def test_stats_per_tier(index_queue: IndexQueue) -> None:
    await index_queue.enqueue("Work", 1, QueuePriority.HIGH, now=at(0))
    await index_queue.enqueue("Work", 2, QueuePriority.LOW, now=at(30))
    await index_queue.enqueue("Work", 3, QueuePriority.LOW, now=at(60))
    await index_queue.dequeue_batch(1, 1, now=at(60))

    stats = await index_queue.stats(now=at(90))

    assert [s.priority for s in stats] == [
        QueuePriority.HIGH,
        QueuePriority.DEFAULT,
        QueuePriority.LOW,
    ]
    high, default, low = stats
    assert (high.pending, high.in_flight) == (0, 1)
    assert (default.pending, default.in_flight) == (0, 0)
    assert low.pending == 2
    assert low.oldest_enqueued_at == at(30)
    assert low.oldest_age_seconds == 60.0
