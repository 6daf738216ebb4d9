"""
Taggable contract for content entities.

Any content entity that carries tags is addressed through an ``EntityRef``
and edited through ``TaggableEntity``, which binds the reference to the tag
graph service and to the scope of one tag field (all tags, or one type).
ORM content models can mix in ``Taggable`` to get a ``TaggableEntity`` for
themselves.
"""

from __future__ import annotations

import uuid
from typing import ClassVar, Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tagsync.db.models import Tag as TagDB
from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import TaggableType, TagType
from tagsync.models.index_effect import MutationResult
from tagsync.services.tag_graph import TagGraphService, TagSetResult


def tag_sort_key(tag: TagDB) -> tuple[int, str, str]:
    """Display order: type rank, then case-insensitive name."""
    return (TagType(tag.tag_type).display_rank, tag.name.casefold(), tag.name)


def render_tag_string(tags: Iterable[TagDB], delimiter: str = ",") -> str:
    """
    Render tags as a canonically ordered, delimiter-separated string.

    Examples
    --------
    >>> render_tag_string([hermione, harry_potter])
    'Harry Potter, Hermione Granger'
    """
    joiner = f"{delimiter} " if delimiter.strip() else delimiter
    return joiner.join(tag.name for tag in sorted(tags, key=tag_sort_key))


class TaggableEntity:
    """
    One entity's tag field bound to the tag graph.

    Parameters
    ----------
    entity : EntityRef
        The content entity.
    graph : TagGraphService
        Service performing the mutations.
    scope : Optional[TagType]
        Tag type edited by this field; ``None`` edits all tags.
    delimiter : Optional[str]
        Separator of the tag string; defaults to the graph's delimiter.
    """

    def __init__(
        self,
        entity: EntityRef,
        graph: TagGraphService,
        *,
        scope: Optional[TagType] = None,
        delimiter: Optional[str] = None,
    ) -> None:
        self.entity = entity
        self.scope = scope
        self.delimiter = delimiter if delimiter is not None else graph.delimiter
        self._graph = graph

    def __repr__(self) -> str:
        scope = self.scope.value if self.scope else "all"
        return f"TaggableEntity({self.entity}, scope={scope})"

    @property
    def graph(self) -> TagGraphService:
        return self._graph

    async def attach_tags(
        self, session: AsyncSession, raw_names: Sequence[str]
    ) -> MutationResult[TagSetResult]:
        return await self._graph.attach_tags(
            session, self.entity, raw_names, scope=self.scope
        )

    async def detach_tag(
        self, session: AsyncSession, tag_id: uuid.UUID
    ) -> MutationResult[TagSetResult]:
        return await self._graph.detach_tag(session, self.entity, tag_id)

    async def effective_tags(
        self, session: AsyncSession, tag_type: Optional[TagType] = None
    ) -> set[uuid.UUID]:
        return await self._graph.effective_tags(
            session, self.entity, tag_type or self.scope
        )

    async def tag_string(self, session: AsyncSession) -> str:
        """Render the effective tags of this field."""
        rows = await self._graph.effective_tag_rows(session, self.entity, self.scope)
        return render_tag_string(rows, self.delimiter)

    async def set_tag_string(
        self, session: AsyncSession, value: str
    ) -> MutationResult[TagSetResult]:
        """
        Replace the tags of this field with the names in *value*.

        Names are split on the delimiter, trimmed, and de-duplicated before
        being resolved. Tags outside the field's scope are left alone. An
        index effect is produced only when the tag set actually changed.
        """
        names = self._graph.normalizer.split_names(value, self.delimiter)
        return await self._graph.replace_tags(
            session, self.entity, names, scope=self.scope
        )


class Taggable:
    """
    Mixin for content models whose rows carry tags.

    Subclasses set ``__taggable_type__`` and expose an integer ``id``.

    Examples
    --------
    >>> class Work(ContentBase, Taggable):
    ...     __tablename__ = "works"
    ...     __taggable_type__ = TaggableType.WORK
    """

    __taggable_type__: ClassVar[TaggableType]
    id: int

    @property
    def entity_ref(self) -> EntityRef:
        return EntityRef(taggable_type=self.__taggable_type__, taggable_id=self.id)

    def taggable(
        self,
        graph: TagGraphService,
        *,
        scope: Optional[TagType] = None,
        delimiter: Optional[str] = None,
    ) -> TaggableEntity:
        """Bind this row's tag field to *graph*."""
        return TaggableEntity(self.entity_ref, graph, scope=scope, delimiter=delimiter)
