"""
Tag parent repository for the type hierarchy DAG.

Edges point from child to parent (a Character belongs to a Fandom, a Fandom
to a Media). Reads return plain adjacency sets so graph algorithms can run
over an explicit structure instead of lazy ORM traversal.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Iterable

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tagsync.db.models import TagParent as TagParentDB


class TagParentRepository:
    """Repository for tag type hierarchy edges."""

    async def add_edge(
        self, session: AsyncSession, child_id: uuid.UUID, parent_id: uuid.UUID
    ) -> bool:
        """Insert an edge; returns False when it already existed."""
        if await self.edge_exists(session, child_id, parent_id):
            return False
        session.add(TagParentDB(child_id=child_id, parent_id=parent_id))
        await session.flush()
        return True

    async def remove_edge(
        self, session: AsyncSession, child_id: uuid.UUID, parent_id: uuid.UUID
    ) -> bool:
        """Delete an edge; returns False when it did not exist."""
        result = await session.execute(
            delete(TagParentDB).where(
                TagParentDB.child_id == child_id,
                TagParentDB.parent_id == parent_id,
            )
        )
        return (result.rowcount or 0) > 0

    async def edge_exists(
        self, session: AsyncSession, child_id: uuid.UUID, parent_id: uuid.UUID
    ) -> bool:
        result = await session.execute(
            select(TagParentDB.child_id).where(
                TagParentDB.child_id == child_id,
                TagParentDB.parent_id == parent_id,
            )
        )
        return result.first() is not None

    async def parents_of(
        self, session: AsyncSession, child_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, set[uuid.UUID]]:
        """Adjacency map child -> parents for the given children."""
        ids = list(set(child_ids))
        adjacency: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        if not ids:
            return adjacency
        result = await session.execute(
            select(TagParentDB.child_id, TagParentDB.parent_id).where(
                TagParentDB.child_id.in_(ids)
            )
        )
        for child_id, parent_id in result.all():
            adjacency[child_id].add(parent_id)
        return adjacency

    async def children_of(
        self, session: AsyncSession, parent_id: uuid.UUID
    ) -> set[uuid.UUID]:
        result = await session.execute(
            select(TagParentDB.child_id).where(TagParentDB.parent_id == parent_id)
        )
        return set(result.scalars().all())

    async def edges_touching(
        self, session: AsyncSession, tag_id: uuid.UUID
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """All ``(child_id, parent_id)`` edges with *tag_id* on either end."""
        result = await session.execute(
            select(TagParentDB.child_id, TagParentDB.parent_id).where(
                (TagParentDB.child_id == tag_id) | (TagParentDB.parent_id == tag_id)
            )
        )
        return [(child, parent) for child, parent in result.all()]

    async def delete_edges(
        self, session: AsyncSession, edges: Iterable[tuple[uuid.UUID, uuid.UUID]]
    ) -> int:
        removed = 0
        for child_id, parent_id in edges:
            result = await session.execute(
                delete(TagParentDB).where(
                    and_(
                        TagParentDB.child_id == child_id,
                        TagParentDB.parent_id == parent_id,
                    )
                )
            )
            removed += result.rowcount or 0
        return removed
