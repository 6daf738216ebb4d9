"""
Tag repository for the taxonomy graph.

Handles lookups and row-level updates of tags. Graph rules (canonical
resolution, merge validation) live in ``TagGraphService``; this module only
reads and writes rows.
"""

from __future__ import annotations

import uuid
from typing import Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from tagsync.db.models import Tag as TagDB
from tagsync.models.enums import TagType
from tagsync.models.tag import TagCreate
from tagsync.repositories.base import BaseSQLAlchemyRepository


class TagRepository(BaseSQLAlchemyRepository[TagDB, TagCreate]):
    """Repository for tag CRUD operations."""

    def __init__(self) -> None:
        """Initialize repository with Tag model."""
        super().__init__(TagDB)

    async def get_by_normalized_name(
        self, session: AsyncSession, normalized_name: str
    ) -> Optional[TagDB]:
        """
        Look up a single tag by its unique normalized name.

        Parameters
        ----------
        session : AsyncSession
            Database session.
        normalized_name : str
            The case/whitespace-folded tag name.

        Returns
        -------
        Optional[TagDB]
            The matching tag of any type, or ``None`` if not found.
        """
        result = await session.execute(
            select(TagDB).where(TagDB.normalized_name == normalized_name)
        )
        return result.scalar_one_or_none()

    async def get_by_normalized_names(
        self, session: AsyncSession, normalized_names: Iterable[str]
    ) -> dict[str, TagDB]:
        """Bulk variant of ``get_by_normalized_name`` keyed by normalized name."""
        names = list(set(normalized_names))
        if not names:
            return {}
        result = await session.execute(
            select(TagDB).where(TagDB.normalized_name.in_(names))
        )
        return {tag.normalized_name: tag for tag in result.scalars().all()}

    async def get_many(
        self, session: AsyncSession, ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, TagDB]:
        """Fetch several tags keyed by id; unknown ids are omitted."""
        id_list = list(set(ids))
        if not id_list:
            return {}
        result = await session.execute(select(TagDB).where(TagDB.id.in_(id_list)))
        return {tag.id: tag for tag in result.scalars().all()}

    async def lock(
        self, session: AsyncSession, ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, TagDB]:
        """
        Load and row-lock tags in ascending id order.

        Locking in a fixed order keeps two concurrent merges over overlapping
        pairs from deadlocking. SQLite ignores ``FOR UPDATE``; its writer lock
        serializes transactions instead.
        """
        result = await session.execute(
            select(TagDB)
            .where(TagDB.id.in_(sorted(set(ids))))
            .order_by(TagDB.id)
            .with_for_update()
        )
        return {tag.id: tag for tag in result.scalars().all()}

    async def lock_shared(
        self, session: AsyncSession, ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, TagDB]:
        """
        Load tags under ``FOR SHARE`` in ascending id order.

        A shared lock lets concurrent attaches proceed while blocking a merge
        (which takes ``FOR UPDATE``) until the holder commits. Rows are
        refreshed from the database so a merge committed before the lock was
        granted is visible to the caller.
        """
        id_list = sorted(set(ids))
        if not id_list:
            return {}
        result = await session.execute(
            select(TagDB)
            .where(TagDB.id.in_(id_list))
            .order_by(TagDB.id)
            .with_for_update(read=True)
            .execution_options(populate_existing=True)
        )
        return {tag.id: tag for tag in result.scalars().all()}

    async def create_if_absent(
        self, session: AsyncSession, *, obj_in: TagCreate
    ) -> tuple[TagDB, bool]:
        """
        Insert a tag unless its normalized name is already taken.

        On PostgreSQL and SQLite this is ``INSERT ... ON CONFLICT DO NOTHING``,
        so losing a race against a concurrent insert of the same name leaves
        the caller's transaction usable.

        Returns
        -------
        tuple[TagDB, bool]
            The row holding the name, and whether this call inserted it.
        """
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(TagDB)
        elif dialect == "sqlite":
            stmt = sqlite.insert(TagDB)
        else:
            return await self.create(session, obj_in=obj_in), True

        await session.execute(
            stmt.values(**obj_in.model_dump()).on_conflict_do_nothing(
                index_elements=["normalized_name"]
            )
        )
        tag = await self.get_by_normalized_name(session, obj_in.normalized_name)
        if tag is None:
            raise LookupError(f"Tag {obj_in.normalized_name!r} vanished after insert")
        return tag, tag.id == obj_in.id

    async def get_synonyms(
        self, session: AsyncSession, canonical_id: uuid.UUID
    ) -> list[TagDB]:
        """Return the tags merged into *canonical_id*."""
        result = await session.execute(
            select(TagDB)
            .where(TagDB.merged_into_id == canonical_id)
            .order_by(TagDB.name)
        )
        return list(result.scalars().all())

    async def repoint_synonyms(
        self,
        session: AsyncSession,
        old_canonical_id: uuid.UUID,
        new_canonical_id: uuid.UUID,
    ) -> int:
        """Re-point every synonym of *old_canonical_id* to *new_canonical_id*."""
        result = await session.execute(
            update(TagDB)
            .where(TagDB.merged_into_id == old_canonical_id)
            .values(merged_into_id=new_canonical_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def list_tags(
        self,
        session: AsyncSession,
        *,
        tag_type: Optional[TagType] = None,
        canonical_only: bool = False,
        prefix: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[TagDB]:
        """
        List tags ordered by name with optional filters.

        Parameters
        ----------
        session : AsyncSession
            Database session.
        tag_type : Optional[TagType]
            Restrict to one tag type.
        canonical_only : bool
            Exclude merged synonyms.
        prefix : Optional[str]
            Normalized-name prefix filter.
        skip : int
            Pagination offset.
        limit : int
            Maximum rows returned.
        """
        query = select(TagDB)
        if tag_type is not None:
            query = query.where(TagDB.tag_type == tag_type.value)
        if canonical_only:
            query = query.where(TagDB.canonical.is_(True))
        if prefix:
            query = query.where(TagDB.normalized_name.startswith(prefix))
        result = await session.execute(
            query.order_by(TagDB.normalized_name).offset(skip).limit(limit)
        )
        return list(result.scalars().all())
