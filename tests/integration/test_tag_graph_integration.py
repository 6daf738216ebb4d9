"""
Integration tests for TagGraphService against a real database.

Each test commits through ``IndexTransaction`` and then inspects the tag
tables and the index queue the way a separate reader would.
"""

from __future__ import annotations

import uuid
from typing import Callable

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tagsync.db.models import Tag as TagDB
from tagsync.db.models import Tagging as TaggingDB
from tagsync.exceptions import (
    CycleDetected,
    InvalidMergeSource,
    InvalidParentType,
    InvalidTagName,
    NameConflict,
)
from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import QueueEntryState, QueuePriority, TagType
from tagsync.repositories import IndexQueueRepository
from tagsync.services.indexing.queue import IndexQueue
from tagsync.services.tag_graph import TagGraphService
from tagsync.services.taggable import TaggableEntity
from tagsync.services.unit_of_work import IndexTransaction

NewTx = Callable[[], IndexTransaction]


async def create(graph: TagGraphService, new_tx: NewTx, name: str, tag_type: TagType) -> uuid.UUID:
    async with new_tx() as tx:
        tag = tx.apply(await graph.create_or_resolve_tag(tx.session, name, tag_type))
        return tag.id


async def attach(graph: TagGraphService, new_tx: NewTx, entity: EntityRef, *names: str) -> None:
    async with new_tx() as tx:
        tx.apply(await graph.attach_tags(tx.session, entity, list(names)))


async def graph_find(
    graph: TagGraphService, session_factory: async_sessionmaker[AsyncSession], name: str
) -> uuid.UUID:
    async with session_factory() as session:
        tag = await graph.find_tag(session, name)
        assert tag is not None
        return tag.id


async def drain_queue(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Remove every queue entry so a test can observe only later effects."""
    queue = IndexQueue(session_factory)
    while entries := await queue.dequeue_batch(100, 3):
        await queue.ack(entries)


class TestResolution:
    async def test_create_is_idempotent_across_spellings(
        self, graph: TagGraphService, new_tx: NewTx
    ) -> None:
        first = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        second = await create(graph, new_tx, "  HARRY   potter ", TagType.FANDOM)
        assert first == second

    async def test_name_conflict_across_types(
        self, graph: TagGraphService, new_tx: NewTx
    ) -> None:
        await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        with pytest.raises(NameConflict):
            await create(graph, new_tx, "harry potter", TagType.CHARACTER)

    async def test_resolve_canonical_is_idempotent(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        hp = await create(graph, new_tx, "HP", TagType.FANDOM)
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        async with new_tx() as tx:
            tx.apply(await graph.merge_tags(tx.session, hp, harry_potter))

        async with session_factory() as session:
            for tag_id in (hp, harry_potter):
                once = await graph.resolve_canonical(session, tag_id)
                twice = await graph.resolve_canonical(session, once)
                assert once == twice == harry_potter
            assert await graph.resolve_many(session, [hp, harry_potter]) == {
                hp: harry_potter,
                harry_potter: harry_potter,
            }


class TestMerge:
    async def test_chains_are_rejected(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        a = await create(graph, new_tx, "A", TagType.FREEFORM)
        b = await create(graph, new_tx, "B", TagType.FREEFORM)
        c = await create(graph, new_tx, "C", TagType.FREEFORM)
        async with new_tx() as tx:
            tx.apply(await graph.merge_tags(tx.session, a, b))

        with pytest.raises(InvalidMergeSource):
            async with new_tx() as tx:
                tx.apply(await graph.merge_tags(tx.session, a, c))

        async with new_tx() as tx:
            tx.apply(await graph.merge_tags(tx.session, c, b))

        async with session_factory() as session:
            assert await graph.resolve_canonical(session, a) == b
            assert await graph.resolve_canonical(session, c) == b

    async def test_merge_rewrites_taggings(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        hp = await create(graph, new_tx, "HP", TagType.FANDOM)
        work_1, work_2 = EntityRef.work(1), EntityRef.work(2)
        await attach(graph, new_tx, work_1, "HP")
        await attach(graph, new_tx, work_2, "HP", "Harry Potter")

        async with new_tx() as tx:
            result = tx.apply(await graph.merge_tags(tx.session, hp, harry_potter))

        assert set(result.affected_entities) == {work_1, work_2}
        async with session_factory() as session:
            for entity in (work_1, work_2):
                assert await graph.effective_tags(session, entity) == {harry_potter}
            rows = await session.execute(select(TaggingDB).where(TaggingDB.tag_id == hp))
            assert rows.scalars().all() == []
            source = await session.get(TagDB, hp)
            assert source is not None
            assert source.canonical is False
            assert source.merged_into_id == harry_potter

    async def test_merge_enqueues_high_over_pending_default(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        hp = await create(graph, new_tx, "HP", TagType.FANDOM)
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        work_1, work_2 = EntityRef.work(1), EntityRef.work(2)
        await attach(graph, new_tx, work_1, "HP")
        await attach(graph, new_tx, work_2, "HP")
        await drain_queue(session_factory)

        # Unrelated edit of work 1 moments before the merge
        async with new_tx() as tx:
            tx.needs_reindex(work_1)
        async with new_tx() as tx:
            tx.apply(await graph.merge_tags(tx.session, hp, harry_potter))

        entries = await index_queue.entries()
        assert sorted((e.entity_id, e.priority) for e in entries) == [
            (1, QueuePriority.HIGH),
            (2, QueuePriority.HIGH),
        ]
        async with session_factory() as session:
            assert await graph.effective_tags(session, work_1) == {harry_potter}

    async def test_merge_cascades_parent_edges(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        hp = await create(graph, new_tx, "HP", TagType.FANDOM)
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        hermione = await create(graph, new_tx, "Hermione Granger", TagType.CHARACTER)
        async with new_tx() as tx:
            tx.apply(await graph.set_parent_type(tx.session, hermione, hp))
        await attach(graph, new_tx, EntityRef.work(3), "Hermione Granger")
        await drain_queue(session_factory)

        async with new_tx() as tx:
            result = tx.apply(await graph.merge_tags(tx.session, hp, harry_potter))

        assert result.edges_moved == 1
        async with session_factory() as session:
            assert [t.id for t in await graph.parents(session, hermione)] == [harry_potter]
        entries = await index_queue.entries()
        assert [(e.entity_id, e.priority) for e in entries] == [(3, QueuePriority.LOW)]

    async def test_merge_without_cascade_keeps_edges(
        self,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        graph: TagGraphService,
    ) -> None:
        graph.merge_cascade_parent_edges = False
        hp = await create(graph, new_tx, "HP", TagType.FANDOM)
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        hermione = await create(graph, new_tx, "Hermione Granger", TagType.CHARACTER)
        async with new_tx() as tx:
            tx.apply(await graph.set_parent_type(tx.session, hermione, hp))

        async with new_tx() as tx:
            result = tx.apply(await graph.merge_tags(tx.session, hp, harry_potter))

        assert result.edges_moved == 0
        async with session_factory() as session:
            assert [t.id for t in await graph.parents(session, hermione)] == [hp]

    async def test_merge_closing_a_cycle_rolls_back_everything(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        graph.enforce_parent_type_rules = False
        a = await create(graph, new_tx, "A", TagType.FREEFORM)
        b = await create(graph, new_tx, "B", TagType.FREEFORM)
        c = await create(graph, new_tx, "C", TagType.FREEFORM)
        # b -> c -> a; moving c's edge from a onto b would close b -> c -> b
        for child, parent in ((b, c), (c, a)):
            async with new_tx() as tx:
                tx.apply(await graph.set_parent_type(tx.session, child, parent))
        work = EntityRef.work(8)
        await attach(graph, new_tx, work, "A")
        await drain_queue(session_factory)

        with pytest.raises(CycleDetected):
            async with new_tx() as tx:
                tx.apply(await graph.merge_tags(tx.session, a, b))

        async with session_factory() as session:
            source = await session.get(TagDB, a)
            assert source is not None
            assert source.canonical is True
            assert source.merged_into_id is None
            assert await graph.effective_tags(session, work) == {a}
            assert [t.id for t in await graph.parents(session, b)] == [c]
            assert [t.id for t in await graph.parents(session, c)] == [a]
        assert await index_queue.entries() == []


class TestHierarchy:
    async def test_cycle_is_rejected_and_dag_unchanged(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        fandom = await create(graph, new_tx, "Marvel", TagType.FANDOM)
        media = await create(graph, new_tx, "Comics", TagType.MEDIA)
        async with new_tx() as tx:
            tx.apply(await graph.set_parent_type(tx.session, fandom, media))

        with pytest.raises(CycleDetected):
            async with new_tx() as tx:
                tx.apply(await graph.set_parent_type(tx.session, media, fandom))

        async with session_factory() as session:
            assert [t.id for t in await graph.parents(session, fandom)] == [media]
            assert await graph.parents(session, media) == []

    async def test_longer_cycle_without_type_rules(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        graph.enforce_parent_type_rules = False
        a = await create(graph, new_tx, "A", TagType.FREEFORM)
        b = await create(graph, new_tx, "B", TagType.FREEFORM)
        c = await create(graph, new_tx, "C", TagType.FREEFORM)
        for child, parent in ((a, b), (b, c)):
            async with new_tx() as tx:
                tx.apply(await graph.set_parent_type(tx.session, child, parent))

        with pytest.raises(CycleDetected):
            async with new_tx() as tx:
                tx.apply(await graph.set_parent_type(tx.session, c, a))

        async with session_factory() as session:
            assert await graph.ancestors(session, a) == {b, c}
            assert await graph.parents(session, c) == []

    async def test_type_rules(self, graph: TagGraphService, new_tx: NewTx) -> None:
        freeform = await create(graph, new_tx, "Fluff", TagType.FREEFORM)
        fandom = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        with pytest.raises(InvalidParentType):
            async with new_tx() as tx:
                tx.apply(await graph.set_parent_type(tx.session, freeform, fandom))

    async def test_parent_edge_queues_inherited_entities_at_low(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        fandom = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        character = await create(graph, new_tx, "Hermione Granger", TagType.CHARACTER)
        await attach(graph, new_tx, EntityRef.work(5), "Hermione Granger")
        await drain_queue(session_factory)

        async with new_tx() as tx:
            tx.apply(await graph.set_parent_type(tx.session, character, fandom))
        entries = await index_queue.entries()
        assert [(e.entity_id, e.priority) for e in entries] == [(5, QueuePriority.LOW)]

        await drain_queue(session_factory)
        async with new_tx() as tx:
            result = tx.apply(await graph.remove_parent_type(tx.session, character, fandom))
        assert result.changed
        assert [e.entity_id for e in await index_queue.entries()] == [5]


class TestTaggings:
    async def test_harry_potter_tag_string(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        await drain_queue(session_factory)
        work = EntityRef.work(42)

        taggable = TaggableEntity(work, graph)

        async with new_tx() as tx:
            result = tx.apply(
                await taggable.set_tag_string(tx.session, "Harry Potter, Hermione Granger")
            )

        async with session_factory() as session:
            hermione = await session.execute(
                select(TagDB).where(TagDB.normalized_name == "hermione granger")
            )
            hermione_tag = hermione.scalar_one()
            assert await graph.effective_tags(session, work) == {
                harry_potter,
                hermione_tag.id,
            }
        assert hermione_tag.tag_type == TagType.FREEFORM.value
        assert result.created == [hermione_tag.id]
        entries = await index_queue.entries()
        assert [(e.entity_type, e.entity_id, e.priority) for e in entries] == [
            ("Work", 42, QueuePriority.DEFAULT)
        ]

    async def test_attach_through_synonym_stores_canonical(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        hp = await create(graph, new_tx, "HP", TagType.FANDOM)
        harry_potter = await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        async with new_tx() as tx:
            tx.apply(await graph.merge_tags(tx.session, hp, harry_potter))

        await attach(graph, new_tx, EntityRef.work(7), "hp")

        async with session_factory() as session:
            rows = await session.execute(select(TaggingDB.tag_id))
            assert rows.scalars().all() == [harry_potter]

    async def test_scoped_attach_conflict_writes_nothing(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        await drain_queue(session_factory)

        with pytest.raises(NameConflict):
            async with new_tx() as tx:
                tx.apply(
                    await graph.attach_tags(
                        tx.session,
                        EntityRef.work(1),
                        ["Brand New Character", "Harry Potter"],
                        scope=TagType.CHARACTER,
                    )
                )

        async with session_factory() as session:
            assert await graph.find_tag(session, "Brand New Character") is None
            rows = await session.execute(select(TaggingDB))
            assert rows.scalars().all() == []
        assert await index_queue.depth() == 0

    async def test_rollback_discards_effects(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        index_queue: IndexQueue,
    ) -> None:
        with pytest.raises(RuntimeError):
            async with new_tx() as tx:
                tx.apply(await graph.attach_tags(tx.session, EntityRef.work(1), ["Fluff"]))
                raise RuntimeError("caller failed after the mutation")

        assert await index_queue.depth() == 0
        async with session_factory() as session:
            assert await graph.find_tag(session, "Fluff") is None

    async def test_detach_and_purge(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
        queue_repo: IndexQueueRepository,
    ) -> None:
        work = EntityRef.work(9)
        await attach(graph, new_tx, work, "Fluff", "Angst")
        fluff = await graph_find(graph, session_factory, "Fluff")
        await drain_queue(session_factory)

        async with new_tx() as tx:
            detached = tx.apply(await graph.detach_tag(tx.session, work, fluff))
        assert detached.removed == {fluff}

        async with new_tx() as tx:
            purged = tx.apply(await graph.purge_entity(tx.session, work))
        assert purged == 1

        async with session_factory() as session:
            assert await graph.effective_tags(session, work) == set()
            pending = await queue_repo.list_entries(session, state=QueueEntryState.PENDING)
        assert [(e.entity_id, e.priority) for e in pending] == [(9, QueuePriority.DEFAULT)]

    async def test_tag_string_reaches_fixed_point(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await create(graph, new_tx, "Harry Potter", TagType.FANDOM)
        taggable = TaggableEntity(EntityRef.series(4), graph, delimiter=";")

        async with new_tx() as tx:
            tx.apply(
                await taggable.set_tag_string(
                    tx.session, " fluff;Angst ;; FLUFF;harry  potter;Angst"
                )
            )
            rendered = await taggable.tag_string(tx.session)
            first = await taggable.effective_tags(tx.session)

        async with new_tx() as tx:
            again = tx.apply(await taggable.set_tag_string(tx.session, rendered))
            second = await taggable.effective_tags(tx.session)
            rerendered = await taggable.tag_string(tx.session)

        assert rendered == "Harry Potter; Angst; fluff"
        assert first == second
        assert rerendered == rendered
        assert not again.changed
        assert tx.committed_effects == []

    async def test_name_holding_the_delimiter_never_enters_the_graph(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        with pytest.raises(InvalidTagName):
            await create(graph, new_tx, "Foo, Bar", TagType.FREEFORM)
        with pytest.raises(InvalidTagName):
            await attach(graph, new_tx, EntityRef.work(1), "Fluff", "Foo, Bar")

        async with session_factory() as session:
            assert await graph.find_tag(session, "Foo, Bar") is None
            assert await graph.find_tag(session, "Fluff") is None
            assert await graph.effective_tags(session, EntityRef.work(1)) == set()

    async def test_tag_string_of_merged_synonym_reaches_fixed_point(
        self,
        graph: TagGraphService,
        new_tx: NewTx,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        foo = await create(graph, new_tx, "Foo Bar", TagType.FREEFORM)
        foo_bar = await create(graph, new_tx, "Foo and Bar", TagType.FREEFORM)
        work = EntityRef.work(6)
        await attach(graph, new_tx, work, "Foo Bar", "Angst")
        async with new_tx() as tx:
            tx.apply(await graph.merge_tags(tx.session, foo, foo_bar))
        taggable = TaggableEntity(work, graph)

        async with session_factory() as session:
            rendered = await taggable.tag_string(session)
            before = await taggable.effective_tags(session)
        async with new_tx() as tx:
            again = tx.apply(await taggable.set_tag_string(tx.session, rendered))

        assert rendered == "Angst, Foo and Bar"
        assert again.tag_ids == before
        assert not again.changed
