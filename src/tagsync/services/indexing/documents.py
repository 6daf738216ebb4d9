"""
Document sources: how the dispatcher reads an entity's searchable form.

The queue only knows ``(entity_type, entity_id)``. At dispatch time the
dispatcher asks the ``DocumentSource`` registered for the entity type for the
current documents of a batch of ids; ids missing from the answer no longer
exist and are dispatched as deletions.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from tagsync.db.models import Tag as TagDB
from tagsync.exceptions import SourceNotRegisteredError
from tagsync.models.enums import TaggableType, TagType
from tagsync.repositories.tag_parent_repository import TagParentRepository
from tagsync.repositories.tagging_repository import TaggingRepository

logger = logging.getLogger(__name__)

Serializer = Callable[[Any], dict[str, Any]]

# Document field per tag type
TAG_FIELDS: dict[TagType, str] = {
    TagType.ARCHIVE_WARNING: "archive_warnings",
    TagType.MEDIA: "media",
    TagType.FANDOM: "fandoms",
    TagType.RELATIONSHIP: "relationships",
    TagType.CHARACTER: "characters",
    TagType.FREEFORM: "freeforms",
}


class DocumentSource(ABC):
    """Owning-domain reader for one entity type."""

    entity_type: str

    @abstractmethod
    async def fetch_documents(
        self, session: AsyncSession, entity_ids: Sequence[int]
    ) -> dict[int, dict[str, Any]]:
        """
        Return the current document of every id that still exists.

        Parameters
        ----------
        session : AsyncSession
            Read session.
        entity_ids : Sequence[int]
            Ids to load.

        Returns
        -------
        dict[int, dict[str, Any]]
            Documents keyed by id. Vanished ids are simply absent.
        """

    @abstractmethod
    def live_ids(
        self, session: AsyncSession, batch_size: int
    ) -> AsyncIterator[list[int]]:
        """Yield every live id of the type in ascending pages."""


class SQLAlchemyDocumentSource(DocumentSource):
    """
    Document source over a mapped content model.

    The document is ``serializer(row)`` plus the entity's canonical tags
    grouped by type (``fandoms``, ``characters``, ...), the tag ids, and
    ``filter_ids``: the tag ids together with every ancestor in the type
    hierarchy, used for filtering by fandom or media.

    Parameters
    ----------
    entity_type : TaggableType
        Kind of entity served.
    model : type
        Mapped class of the content table.
    id_column : InstrumentedAttribute | None
        Primary key attribute; defaults to ``model.id``.
    serializer : Serializer | None
        Row to document conversion; defaults to the row's column values.
    """

    def __init__(
        self,
        entity_type: TaggableType,
        model: type,
        *,
        id_column: Optional[InstrumentedAttribute[Any]] = None,
        serializer: Optional[Serializer] = None,
        tagging_repo: Optional[TaggingRepository] = None,
        parent_repo: Optional[TagParentRepository] = None,
    ) -> None:
        self.entity_type = entity_type.value
        self._taggable_type = entity_type
        self._model = model
        self._id_column = id_column if id_column is not None else getattr(model, "id")
        self._serializer = serializer or _column_values
        self._tagging_repo = tagging_repo or TaggingRepository()
        self._parent_repo = parent_repo or TagParentRepository()

    async def fetch_documents(
        self, session: AsyncSession, entity_ids: Sequence[int]
    ) -> dict[int, dict[str, Any]]:
        ids = sorted(set(entity_ids))
        if not ids:
            return {}
        result = await session.execute(
            select(self._model).where(self._id_column.in_(ids))
        )
        rows = {getattr(row, self._id_column.key): row for row in result.scalars()}
        tags_by_entity = await self._tagging_repo.tags_for_entities(
            session, self._taggable_type, rows.keys()
        )
        all_tag_ids = {tag.id for tags in tags_by_entity.values() for tag in tags}
        ancestors = await self._ancestor_map(session, all_tag_ids)

        documents: dict[int, dict[str, Any]] = {}
        for entity_id, row in rows.items():
            document = dict(self._serializer(row))
            document.update(
                tag_fields(tags_by_entity.get(entity_id, []), ancestors)
            )
            documents[entity_id] = document
        return documents

    async def live_ids(
        self, session: AsyncSession, batch_size: int
    ) -> AsyncIterator[list[int]]:
        last_id: Optional[int] = None
        while True:
            query = select(self._id_column).order_by(self._id_column).limit(batch_size)
            if last_id is not None:
                query = query.where(self._id_column > last_id)
            result = await session.execute(query)
            page = list(result.scalars().all())
            if not page:
                return
            yield page
            if len(page) < batch_size:
                return
            last_id = page[-1]

    async def _ancestor_map(
        self, session: AsyncSession, tag_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, set[uuid.UUID]]:
        """Map every tag id to the set of its ancestors, in one BFS sweep."""
        tag_ids = list(tag_ids)
        parents: dict[uuid.UUID, set[uuid.UUID]] = {}
        frontier = set(tag_ids)
        while frontier:
            adjacency = await self._parent_repo.parents_of(session, frontier)
            parents.update({tag_id: set() for tag_id in frontier})
            parents.update(adjacency)
            frontier = {p for ps in adjacency.values() for p in ps} - parents.keys()

        ancestors: dict[uuid.UUID, set[uuid.UUID]] = {}
        for tag_id in tag_ids:
            seen: set[uuid.UUID] = set()
            stack = list(parents.get(tag_id, ()))
            while stack:
                current = stack.pop()
                if current in seen:
                    continue
                seen.add(current)
                stack.extend(parents.get(current, ()))
            ancestors[tag_id] = seen
        return ancestors


def tag_fields(
    tags: Sequence[TagDB],
    ancestors: Optional[dict[uuid.UUID, set[uuid.UUID]]] = None,
) -> dict[str, Any]:
    """Search document fields derived from an entity's canonical tags."""
    grouped: dict[str, list[str]] = defaultdict(list)
    for tag in sorted(tags, key=lambda t: t.normalized_name):
        grouped[TAG_FIELDS[TagType(tag.tag_type)]].append(tag.name)

    tag_ids = sorted(str(tag.id) for tag in tags)
    filter_ids = {tag.id for tag in tags}
    for tag in tags:
        filter_ids.update((ancestors or {}).get(tag.id, ()))

    fields: dict[str, Any] = {field: grouped.get(field, []) for field in TAG_FIELDS.values()}
    fields["tag_ids"] = tag_ids
    fields["filter_ids"] = sorted(str(tag_id) for tag_id in filter_ids)
    return fields


def _column_values(row: Any) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        values[column.key] = value
    return values


class DocumentSourceRegistry:
    """Document sources keyed by entity type."""

    def __init__(self, sources: Iterable[DocumentSource] = ()) -> None:
        self._sources: dict[str, DocumentSource] = {}
        for source in sources:
            self.register(source)

    def register(self, source: DocumentSource) -> None:
        if source.entity_type in self._sources:
            logger.warning("Replacing document source for %s", source.entity_type)
        self._sources[source.entity_type] = source

    def get(self, entity_type: str) -> DocumentSource:
        """
        Return the source for *entity_type*.

        Raises
        ------
        SourceNotRegisteredError
            If no source serves the type.
        """
        try:
            return self._sources[entity_type]
        except KeyError:
            raise SourceNotRegisteredError(entity_type) from None

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._sources

    @property
    def entity_types(self) -> list[str]:
        return sorted(self._sources)
