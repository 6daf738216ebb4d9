"""
Tagging repository for the polymorphic entity/tag join table.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from tagsync.db.models import Tag as TagDB
from tagsync.db.models import Tagging as TaggingDB
from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import TaggableType, TagType


class TaggingRepository:
    """Repository for taggings keyed by ``(taggable_type, taggable_id, tag_id)``."""

    async def get_tags(
        self,
        session: AsyncSession,
        entity: EntityRef,
        *,
        tag_type: Optional[TagType] = None,
    ) -> list[TagDB]:
        """
        Return the tags attached to *entity*, optionally of one type.

        Parameters
        ----------
        session : AsyncSession
            Database session.
        entity : EntityRef
            The tagged entity.
        tag_type : Optional[TagType]
            When given, only tags of this type are returned.
        """
        query = (
            select(TagDB)
            .join(TaggingDB, TaggingDB.tag_id == TagDB.id)
            .where(
                TaggingDB.taggable_type == entity.taggable_type.value,
                TaggingDB.taggable_id == entity.taggable_id,
            )
        )
        if tag_type is not None:
            query = query.where(TagDB.tag_type == tag_type.value)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def exists(
        self, session: AsyncSession, entity: EntityRef, tag_id: uuid.UUID
    ) -> bool:
        result = await session.execute(
            select(TaggingDB.id).where(
                TaggingDB.taggable_type == entity.taggable_type.value,
                TaggingDB.taggable_id == entity.taggable_id,
                TaggingDB.tag_id == tag_id,
            )
        )
        return result.first() is not None

    async def add(
        self, session: AsyncSession, entity: EntityRef, tag_id: uuid.UUID
    ) -> bool:
        """Create the tagging unless present; returns True when a row was added."""
        if await self.exists(session, entity, tag_id):
            return False
        session.add(
            TaggingDB(
                taggable_type=entity.taggable_type.value,
                taggable_id=entity.taggable_id,
                tag_id=tag_id,
            )
        )
        await session.flush()
        return True

    async def remove(
        self, session: AsyncSession, entity: EntityRef, tag_ids: Iterable[uuid.UUID]
    ) -> int:
        """Delete the taggings of *entity* for the given tags."""
        ids = list(set(tag_ids))
        if not ids:
            return 0
        result = await session.execute(
            delete(TaggingDB)
            .where(
                TaggingDB.taggable_type == entity.taggable_type.value,
                TaggingDB.taggable_id == entity.taggable_id,
                TaggingDB.tag_id.in_(ids),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def remove_all(self, session: AsyncSession, entity: EntityRef) -> int:
        """Delete every tagging of *entity*."""
        result = await session.execute(
            delete(TaggingDB)
            .where(
                TaggingDB.taggable_type == entity.taggable_type.value,
                TaggingDB.taggable_id == entity.taggable_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def entities_for_tag(
        self, session: AsyncSession, tag_id: uuid.UUID
    ) -> list[EntityRef]:
        """Every entity carrying *tag_id*, ordered by type then id."""
        result = await session.execute(
            select(TaggingDB.taggable_type, TaggingDB.taggable_id)
            .where(TaggingDB.tag_id == tag_id)
            .distinct()
            .order_by(TaggingDB.taggable_type, TaggingDB.taggable_id)
        )
        return [
            EntityRef(taggable_type=TaggableType(taggable_type), taggable_id=taggable_id)
            for taggable_type, taggable_id in result.all()
        ]

    async def rewrite_tag(
        self, session: AsyncSession, source_id: uuid.UUID, target_id: uuid.UUID
    ) -> int:
        """
        Move every tagging of *source_id* onto *target_id*.

        Entities that already carry the target lose their source tagging
        instead, so the unique triple is never violated.

        Returns
        -------
        int
            Number of taggings removed or rewritten.
        """
        duplicate = aliased(TaggingDB)
        already_tagged = (
            select(duplicate.id)
            .where(
                duplicate.taggable_type == TaggingDB.taggable_type,
                duplicate.taggable_id == TaggingDB.taggable_id,
                duplicate.tag_id == target_id,
            )
            .exists()
        )
        removed = await session.execute(
            delete(TaggingDB)
            .where(TaggingDB.tag_id == source_id, already_tagged)
            .execution_options(synchronize_session=False)
        )
        rewritten = await session.execute(
            update(TaggingDB)
            .where(TaggingDB.tag_id == source_id)
            .values(tag_id=target_id)
            .execution_options(synchronize_session=False)
        )
        return (removed.rowcount or 0) + (rewritten.rowcount or 0)

    async def tags_for_entities(
        self,
        session: AsyncSession,
        taggable_type: TaggableType,
        taggable_ids: Iterable[int],
    ) -> dict[int, list[TagDB]]:
        """Tags of many entities of one type, keyed by entity id."""
        ids = list(set(taggable_ids))
        tags_by_entity: dict[int, list[TagDB]] = defaultdict(list)
        if not ids:
            return tags_by_entity
        result = await session.execute(
            select(TaggingDB.taggable_id, TagDB)
            .join(TagDB, TaggingDB.tag_id == TagDB.id)
            .where(
                TaggingDB.taggable_type == taggable_type.value,
                TaggingDB.taggable_id.in_(ids),
            )
        )
        for taggable_id, tag in result.all():
            tags_by_entity[taggable_id].append(tag)
        return tags_by_entity
