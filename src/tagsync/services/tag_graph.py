"""
Tag graph service: the authoritative mutation protocol for the taxonomy.

Owns tags, their type hierarchy (a DAG of parent edges) and canonical/synonym
merges, plus the polymorphic taggings that attach tags to content entities.

Every mutation runs inside the caller's transaction and returns a
``MutationResult`` carrying the index effects it implies. Nothing is
enqueued here: the caller's transaction boundary (``IndexTransaction``)
writes the effects to the index queue in the same commit, so effects are
never lost when the data change commits and never emitted when it rolls
back. A ``TaxonomyError`` raised by any method means the caller must roll
back; ``IndexTransaction`` does so automatically.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from uuid_utils import uuid7

from tagsync.db.models import Tag as TagDB
from tagsync.exceptions import (
    CycleDetected,
    InvalidMergeSource,
    InvalidMergeTarget,
    InvalidParentType,
    InvalidTagName,
    NameConflict,
    TagNotFoundError,
)
from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import QueuePriority, TagOperationType, TagType
from tagsync.models.index_effect import IndexEffect, MutationResult
from tagsync.models.tag import TagCreate
from tagsync.models.tag_operation_log import TagOperationLogCreate
from tagsync.repositories.tag_operation_log_repository import (
    TagOperationLogRepository,
)
from tagsync.repositories.tag_parent_repository import TagParentRepository
from tagsync.repositories.tag_repository import TagRepository
from tagsync.repositories.tagging_repository import TaggingRepository
from tagsync.services.tag_normalization import (
    TagNormalizationService,
    clean_display_name,
)

logger = logging.getLogger(__name__)

# Allowed child type -> parent types of the type hierarchy
PARENT_TYPE_RULES: dict[TagType, frozenset[TagType]] = {
    TagType.CHARACTER: frozenset({TagType.FANDOM}),
    TagType.RELATIONSHIP: frozenset({TagType.FANDOM}),
    TagType.FANDOM: frozenset({TagType.MEDIA}),
}


def _new_tag_id() -> uuid.UUID:
    """Generate a UUIDv7 as a standard uuid.UUID."""
    return uuid.UUID(bytes=uuid7().bytes)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MergeResult:
    """Result of a merge operation."""

    source_id: uuid.UUID
    target_id: uuid.UUID
    taggings_rewritten: int
    synonyms_repointed: int
    edges_moved: int
    affected_entities: list[EntityRef]
    operation_id: uuid.UUID


@dataclass
class ParentEdgeResult:
    """Result of adding or removing a parent edge."""

    child_id: uuid.UUID
    parent_id: uuid.UUID
    changed: bool
    operation_id: Optional[uuid.UUID] = None


@dataclass
class TagSetResult:
    """Effective tag set of an entity after a tagging mutation."""

    entity: EntityRef
    tag_ids: set[uuid.UUID]
    added: set[uuid.UUID] = field(default_factory=set)
    removed: set[uuid.UUID] = field(default_factory=set)
    created: list[uuid.UUID] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class _PlannedName:
    """A raw name resolved (or scheduled for creation) before any write."""

    name: str
    normalized_name: str
    tag_type: TagType
    canonical_id: Optional[uuid.UUID] = None
    scoped: bool = False


class TagGraphService:
    """
    Service for tag graph reads and mutations.

    Parameters
    ----------
    tag_repo : TagRepository
        Tag row access.
    parent_repo : TagParentRepository
        Type hierarchy edge access.
    tagging_repo : TaggingRepository
        Entity/tag association access.
    operation_log_repo : TagOperationLogRepository
        Audit log writer for merges and hierarchy edits.
    normalizer : TagNormalizationService | None
        Name folding used for uniqueness.
    merge_cascade_parent_edges : bool
        When True, merging moves the source's parent and child edges onto
        the target. When False they stay on the merged-away tag.
    enforce_parent_type_rules : bool
        When True, only the edges in ``PARENT_TYPE_RULES`` are accepted.
    delimiter : str
        Separator of rendered tag strings; tag names may not contain it.
    """

    def __init__(
        self,
        tag_repo: TagRepository,
        parent_repo: TagParentRepository,
        tagging_repo: TaggingRepository,
        operation_log_repo: TagOperationLogRepository,
        normalizer: TagNormalizationService | None = None,
        *,
        merge_cascade_parent_edges: bool = True,
        enforce_parent_type_rules: bool = True,
        delimiter: str = ",",
    ) -> None:
        self._tag_repo = tag_repo
        self._parent_repo = parent_repo
        self._tagging_repo = tagging_repo
        self._operation_log_repo = operation_log_repo
        self.normalizer = normalizer or TagNormalizationService()
        self.merge_cascade_parent_edges = merge_cascade_parent_edges
        self.enforce_parent_type_rules = enforce_parent_type_rules
        self.delimiter = delimiter

    # -------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------

    async def get_tag(self, session: AsyncSession, tag_id: uuid.UUID) -> TagDB:
        """Fetch a tag or raise ``TagNotFoundError``."""
        tag = await self._tag_repo.get(session, tag_id)
        if tag is None:
            raise TagNotFoundError(tag_id)
        return tag

    async def find_tag(self, session: AsyncSession, name: str) -> Optional[TagDB]:
        """Look up a tag of any type by name (case/whitespace-insensitive)."""
        key = self.normalizer.normalize(name)
        if key is None:
            return None
        return await self._tag_repo.get_by_normalized_name(session, key)

    async def create_or_resolve_tag(
        self,
        session: AsyncSession,
        name: str,
        tag_type: TagType | str,
        *,
        performed_by: str = "cli",
    ) -> MutationResult[TagDB]:
        """
        Return the tag named *name* of type *tag_type*, creating it if absent.

        A newly created tag is canonical. An existing tag is returned as is,
        even when it is a merged synonym; use ``resolve_canonical`` for its
        effective identity.

        Raises
        ------
        InvalidTagType
            If *tag_type* is not a recognized type.
        NameConflict
            If the normalized name already exists under another type.
        InvalidTagName
            If the name is blank or contains the tag delimiter.
        """
        resolved_type = TagType.parse(tag_type)
        display_name = clean_display_name(name)
        key = self.normalizer.normalize(display_name)
        if key is None:
            raise InvalidTagName(name, "name cannot be blank")
        self._check_delimiter(display_name)

        existing = await self._tag_repo.get_by_normalized_name(session, key)
        if existing is not None:
            if existing.tag_type != resolved_type.value:
                raise NameConflict(display_name, resolved_type.value, existing.tag_type)
            return MutationResult(existing)

        tag, created = await self._create_tag(session, display_name, key, resolved_type)
        if not created:
            return MutationResult(tag)
        await self._log_operation(
            session,
            operation_type=TagOperationType.CREATE,
            source_ids=[],
            target_id=tag.id,
            affected_count=0,
            details={"name": tag.name, "tag_type": tag.tag_type},
            performed_by=performed_by,
        )
        return MutationResult(tag)

    def _check_delimiter(self, name: str) -> None:
        separator = self.delimiter.strip()
        if separator and separator in name:
            raise InvalidTagName(name, f"contains the tag delimiter {separator!r}")

    async def _create_tag(
        self,
        session: AsyncSession,
        name: str,
        normalized_name: str,
        tag_type: TagType,
        *,
        any_type: bool = False,
    ) -> tuple[TagDB, bool]:
        """
        Insert a canonical tag, or adopt the row a concurrent writer committed.

        Returns the tag and whether it was created here. An adopted row of
        another type raises ``NameConflict`` unless *any_type* is set.
        """
        tag, created = await self._tag_repo.create_if_absent(
            session,
            obj_in=TagCreate(
                id=_new_tag_id(),
                name=name,
                normalized_name=normalized_name,
                tag_type=tag_type,
            ),
        )
        if not created:
            if not any_type and tag.tag_type != tag_type.value:
                raise NameConflict(name, tag_type.value, tag.tag_type)
            logger.info("Tag %r was created concurrently as %s", name, tag.id)
            return tag, False
        logger.info("Created %s tag %r (%s)", tag.tag_type, tag.name, tag.id)
        return tag, True

    async def resolve_canonical(
        self, session: AsyncSession, tag_id: uuid.UUID
    ) -> uuid.UUID:
        """
        Return the effective identity of a tag in one hop.

        A canonical tag resolves to itself, a synonym to its ``merged_into``
        target. Merge chains never exist, so no further lookup is needed.
        """
        tag = await self.get_tag(session, tag_id)
        return tag.merged_into_id if tag.merged_into_id is not None else tag.id

    async def resolve_many(
        self, session: AsyncSession, tag_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, uuid.UUID]:
        """Bulk ``resolve_canonical``; unknown ids raise ``TagNotFoundError``."""
        ids = list(tag_ids)
        tags = await self._tag_repo.get_many(session, ids)
        resolved: dict[uuid.UUID, uuid.UUID] = {}
        for tag_id in ids:
            tag = tags.get(tag_id)
            if tag is None:
                raise TagNotFoundError(tag_id)
            resolved[tag_id] = tag.merged_into_id or tag.id
        return resolved

    # -------------------------------------------------------------------
    # Merges
    # -------------------------------------------------------------------

    async def merge_tags(
        self,
        session: AsyncSession,
        source_id: uuid.UUID,
        target_id: uuid.UUID,
        *,
        reason: Optional[str] = None,
        performed_by: str = "cli",
    ) -> MutationResult[MergeResult]:
        """
        Merge canonical tag *source_id* into canonical tag *target_id*.

        Rewrites every tagging of the source onto the target, re-points the
        source's own synonyms to the target, demotes the source to a synonym
        of the target, and (per policy) moves its hierarchy edges. Both tags
        are row-locked for the rest of the transaction.

        Returns
        -------
        MutationResult[MergeResult]
            High priority effects for every entity that carried the source,
            Low priority effects for entities whose inherited tags moved.

        Raises
        ------
        TagNotFoundError
            If the source does not exist.
        InvalidMergeSource
            If the source is not canonical.
        InvalidMergeTarget
            If the target is missing, not canonical, the source itself, or of
            another type.
        CycleDetected
            If moving hierarchy edges onto the target would close a cycle.
        """
        if source_id == target_id:
            raise InvalidMergeTarget(target_id, "Cannot merge a tag into itself")

        locked = await self._tag_repo.lock(session, [source_id, target_id])
        source = locked.get(source_id)
        target = locked.get(target_id)
        if source is None:
            raise TagNotFoundError(source_id)
        if not source.canonical:
            raise InvalidMergeSource(
                source_id,
                f"Tag {source.name!r} is already merged into "
                f"{source.merged_into_id} and cannot be merged again",
            )
        if target is None:
            raise InvalidMergeTarget(target_id, f"Merge target {target_id} not found")
        if not target.canonical:
            raise InvalidMergeTarget(
                target_id,
                f"Merge target {target.name!r} is not canonical; merge into "
                f"{target.merged_into_id} instead",
            )
        if source.tag_type != target.tag_type:
            raise InvalidMergeTarget(
                target_id,
                f"Cannot merge {source.tag_type} tag {source.name!r} into "
                f"{target.tag_type} tag {target.name!r}",
            )

        inherited_before = await self._entities_below(session, source.id, include_self=False)

        edges_moved = 0
        if self.merge_cascade_parent_edges:
            edges_moved = await self._move_edges(session, source.id, target.id)

        affected = await self._tagging_repo.entities_for_tag(session, source.id)
        rewritten = await self._tagging_repo.rewrite_tag(session, source.id, target.id)
        repointed = await self._tag_repo.repoint_synonyms(session, source.id, target.id)

        source.canonical = False
        source.merged_into_id = target.id
        await session.flush()

        operation_id = await self._log_operation(
            session,
            operation_type=TagOperationType.MERGE,
            source_ids=[source.id],
            target_id=target.id,
            affected_count=len(affected),
            reason=reason,
            details={
                "source_name": source.name,
                "target_name": target.name,
                "taggings_rewritten": rewritten,
                "synonyms_repointed": repointed,
                "edges_moved": edges_moved,
            },
            performed_by=performed_by,
        )
        logger.info(
            "Merged %r into %r: %d taggings, %d synonyms, %d edges, %d entities",
            source.name,
            target.name,
            rewritten,
            repointed,
            edges_moved,
            len(affected),
        )

        effects = [IndexEffect(entity, QueuePriority.HIGH) for entity in affected]
        if edges_moved:
            effects.extend(
                IndexEffect(entity, QueuePriority.LOW) for entity in inherited_before
            )
        return MutationResult(
            MergeResult(
                source_id=source.id,
                target_id=target.id,
                taggings_rewritten=rewritten,
                synonyms_repointed=repointed,
                edges_moved=edges_moved,
                affected_entities=affected,
                operation_id=operation_id,
            ),
            effects,
        )

    async def _move_edges(
        self, session: AsyncSession, source_id: uuid.UUID, target_id: uuid.UUID
    ) -> int:
        """Move hierarchy edges touching *source_id* onto *target_id*."""
        old_edges = await self._parent_repo.edges_touching(session, source_id)
        if not old_edges:
            return 0
        await self._parent_repo.delete_edges(session, old_edges)

        moved = 0
        for child_id, parent_id in old_edges:
            new_child = target_id if child_id == source_id else child_id
            new_parent = target_id if parent_id == source_id else parent_id
            if new_child == new_parent:
                # Edge between source and target collapses away
                continue
            if await self._reaches(session, new_parent, new_child):
                raise CycleDetected(new_child, new_parent)
            if await self._parent_repo.add_edge(session, new_child, new_parent):
                moved += 1
        return moved

    # -------------------------------------------------------------------
    # Type hierarchy
    # -------------------------------------------------------------------

    async def set_parent_type(
        self,
        session: AsyncSession,
        tag_id: uuid.UUID,
        parent_tag_id: uuid.UUID,
        *,
        performed_by: str = "cli",
    ) -> MutationResult[ParentEdgeResult]:
        """
        Add the hierarchy edge *tag_id* -> *parent_tag_id*.

        Both ends are resolved to their canonical tags first. Reachability is
        checked before insertion: the edge is rejected when the child is
        already an ancestor of the parent.

        Raises
        ------
        TagNotFoundError
            If either tag does not exist.
        CycleDetected
            If the edge would create a cycle (including a self-edge).
        InvalidParentType
            If type rules are enforced and the pair is not allowed.
        """
        child = await self._canonical_row(session, tag_id)
        parent = await self._canonical_row(session, parent_tag_id)

        if child.id == parent.id or await self._reaches(session, parent.id, child.id):
            raise CycleDetected(child.id, parent.id)

        if self.enforce_parent_type_rules:
            child_type = TagType(child.tag_type)
            parent_type = TagType(parent.tag_type)
            if parent_type not in PARENT_TYPE_RULES.get(child_type, frozenset()):
                raise InvalidParentType(child_type.value, parent_type.value)

        added = await self._parent_repo.add_edge(session, child.id, parent.id)
        if not added:
            return MutationResult(ParentEdgeResult(child.id, parent.id, changed=False))

        operation_id = await self._log_operation(
            session,
            operation_type=TagOperationType.ADD_PARENT,
            source_ids=[child.id],
            target_id=parent.id,
            affected_count=0,
            details={"child_name": child.name, "parent_name": parent.name},
            performed_by=performed_by,
        )
        logger.info("Added parent %r to %r", parent.name, child.name)
        effects = [
            IndexEffect(entity, QueuePriority.LOW)
            for entity in await self._entities_below(session, child.id)
        ]
        return MutationResult(
            ParentEdgeResult(child.id, parent.id, changed=True, operation_id=operation_id),
            effects,
        )

    async def remove_parent_type(
        self,
        session: AsyncSession,
        tag_id: uuid.UUID,
        parent_tag_id: uuid.UUID,
        *,
        performed_by: str = "cli",
    ) -> MutationResult[ParentEdgeResult]:
        """Remove the hierarchy edge *tag_id* -> *parent_tag_id* if present."""
        child = await self._canonical_row(session, tag_id)
        parent = await self._canonical_row(session, parent_tag_id)

        removed = await self._parent_repo.remove_edge(session, child.id, parent.id)
        if not removed:
            return MutationResult(ParentEdgeResult(child.id, parent.id, changed=False))

        operation_id = await self._log_operation(
            session,
            operation_type=TagOperationType.REMOVE_PARENT,
            source_ids=[child.id],
            target_id=parent.id,
            affected_count=0,
            details={"child_name": child.name, "parent_name": parent.name},
            performed_by=performed_by,
        )
        effects = [
            IndexEffect(entity, QueuePriority.LOW)
            for entity in await self._entities_below(session, child.id)
        ]
        return MutationResult(
            ParentEdgeResult(child.id, parent.id, changed=True, operation_id=operation_id),
            effects,
        )

    async def parents(self, session: AsyncSession, tag_id: uuid.UUID) -> list[TagDB]:
        """Direct parents of a tag's canonical form, ordered by name."""
        canonical_id = await self.resolve_canonical(session, tag_id)
        adjacency = await self._parent_repo.parents_of(session, [canonical_id])
        tags = await self._tag_repo.get_many(session, adjacency.get(canonical_id, set()))
        return sorted(tags.values(), key=lambda t: t.normalized_name)

    async def ancestors(self, session: AsyncSession, tag_id: uuid.UUID) -> set[uuid.UUID]:
        """All tags reachable over parent edges, excluding the tag itself."""
        canonical_id = await self.resolve_canonical(session, tag_id)
        return await self._ancestor_ids(session, [canonical_id])

    async def _ancestor_ids(
        self, session: AsyncSession, start_ids: Iterable[uuid.UUID]
    ) -> set[uuid.UUID]:
        start = set(start_ids)
        seen: set[uuid.UUID] = set()
        frontier = set(start)
        while frontier:
            adjacency = await self._parent_repo.parents_of(session, frontier)
            next_frontier: set[uuid.UUID] = set()
            for parents in adjacency.values():
                next_frontier.update(p for p in parents if p not in seen)
            seen.update(next_frontier)
            frontier = next_frontier
        return seen - start

    async def _reaches(
        self, session: AsyncSession, start_id: uuid.UUID, goal_id: uuid.UUID
    ) -> bool:
        """Whether *goal_id* is reachable from *start_id* over parent edges."""
        seen: set[uuid.UUID] = {start_id}
        frontier = {start_id}
        while frontier:
            adjacency = await self._parent_repo.parents_of(session, frontier)
            next_frontier: set[uuid.UUID] = set()
            for parents in adjacency.values():
                for parent_id in parents:
                    if parent_id == goal_id:
                        return True
                    if parent_id not in seen:
                        seen.add(parent_id)
                        next_frontier.add(parent_id)
            frontier = next_frontier
        return False

    async def _descendant_ids(
        self, session: AsyncSession, tag_id: uuid.UUID
    ) -> set[uuid.UUID]:
        seen: set[uuid.UUID] = set()
        queue: deque[uuid.UUID] = deque([tag_id])
        while queue:
            current = queue.popleft()
            for child_id in await self._parent_repo.children_of(session, current):
                if child_id not in seen and child_id != tag_id:
                    seen.add(child_id)
                    queue.append(child_id)
        return seen

    async def _entities_below(
        self, session: AsyncSession, tag_id: uuid.UUID, *, include_self: bool = True
    ) -> list[EntityRef]:
        """Entities tagged with *tag_id* or any of its descendants."""
        tag_ids = await self._descendant_ids(session, tag_id)
        if include_self:
            tag_ids.add(tag_id)
        entities: dict[EntityRef, None] = {}
        for current in sorted(tag_ids):
            for entity in await self._tagging_repo.entities_for_tag(session, current):
                entities[entity] = None
        return list(entities)

    async def _canonical_row(self, session: AsyncSession, tag_id: uuid.UUID) -> TagDB:
        tag = await self.get_tag(session, tag_id)
        if tag.merged_into_id is None:
            return tag
        return await self.get_tag(session, tag.merged_into_id)

    # -------------------------------------------------------------------
    # Taggings
    # -------------------------------------------------------------------

    async def attach_tags(
        self,
        session: AsyncSession,
        entity: EntityRef,
        raw_names: Sequence[str],
        *,
        scope: Optional[TagType] = None,
    ) -> MutationResult[TagSetResult]:
        """
        Resolve or create each named tag and attach its canonical form.

        Every name is resolved before anything is written, so a
        ``NameConflict`` leaves the entity exactly as it was.

        Parameters
        ----------
        session : AsyncSession
            Database session (caller manages transaction).
        entity : EntityRef
            Entity receiving the tags.
        raw_names : Sequence[str]
            User-supplied names, in input order.
        scope : Optional[TagType]
            Tag type of the field being edited. ``None`` means "all tags":
            names resolve under any type and new names become Freeform tags.

        Returns
        -------
        MutationResult[TagSetResult]
            The entity's full effective tag set after the call, with a
            Default priority effect when anything was added.
        """
        plan = await self._plan_names(session, raw_names, scope)
        wanted, created = await self._materialize(session, plan)

        added: set[uuid.UUID] = set()
        for tag_id in wanted:
            if await self._tagging_repo.add(session, entity, tag_id):
                added.add(tag_id)

        current = await self.effective_tags(session, entity)
        result = TagSetResult(entity, current, added=added, created=created)
        effects = [IndexEffect(entity)] if added else []
        return MutationResult(result, effects)

    async def replace_tags(
        self,
        session: AsyncSession,
        entity: EntityRef,
        raw_names: Sequence[str],
        *,
        scope: Optional[TagType] = None,
    ) -> MutationResult[TagSetResult]:
        """
        Make the entity's tags within *scope* exactly the named set.

        Tags of other types are untouched when *scope* is a type.
        """
        plan = await self._plan_names(session, raw_names, scope)
        wanted, created = await self._materialize(session, plan)

        current_rows = await self._tagging_repo.get_tags(session, entity, tag_type=scope)
        current = {tag.id for tag in current_rows}
        wanted_set = set(wanted)
        to_remove = current - wanted_set

        await self._tagging_repo.remove(session, entity, to_remove)
        added: set[uuid.UUID] = set()
        for tag_id in wanted:
            if await self._tagging_repo.add(session, entity, tag_id):
                added.add(tag_id)

        result = TagSetResult(
            entity,
            await self.effective_tags(session, entity),
            added=added,
            removed=to_remove,
            created=created,
        )
        effects = [IndexEffect(entity)] if result.changed else []
        return MutationResult(result, effects)

    async def detach_tag(
        self, session: AsyncSession, entity: EntityRef, tag_id: uuid.UUID
    ) -> MutationResult[TagSetResult]:
        """Remove a tag (or the canonical tag a synonym resolves to) from *entity*."""
        canonical_id = await self.resolve_canonical(session, tag_id)
        removed = await self._tagging_repo.remove(session, entity, [canonical_id])
        result = TagSetResult(
            entity,
            await self.effective_tags(session, entity),
            removed={canonical_id} if removed else set(),
        )
        effects = [IndexEffect(entity)] if removed else []
        return MutationResult(result, effects)

    async def effective_tags(
        self,
        session: AsyncSession,
        entity: EntityRef,
        tag_type: Optional[TagType] = None,
    ) -> set[uuid.UUID]:
        """Canonical tag ids attached to *entity*, optionally of one type."""
        rows = await self.effective_tag_rows(session, entity, tag_type)
        return {tag.id for tag in rows}

    async def effective_tag_rows(
        self,
        session: AsyncSession,
        entity: EntityRef,
        tag_type: Optional[TagType] = None,
    ) -> list[TagDB]:
        """Canonical tag rows attached to *entity*, optionally of one type."""
        return await self._tagging_repo.get_tags(session, entity, tag_type=tag_type)

    async def purge_entity(
        self, session: AsyncSession, entity: EntityRef
    ) -> MutationResult[int]:
        """
        Destroy every tagging of a destroyed entity.

        The returned effect makes the dispatcher notice the entity is gone
        and send a deletion to the search engine.
        """
        removed = await self._tagging_repo.remove_all(session, entity)
        logger.debug("Purged %d taggings of %s", removed, entity)
        return MutationResult(removed, [IndexEffect(entity)])

    async def _plan_names(
        self,
        session: AsyncSession,
        raw_names: Sequence[str],
        scope: Optional[TagType],
    ) -> list[_PlannedName]:
        planned: list[_PlannedName] = []
        seen: set[str] = set()
        for raw in raw_names:
            name = clean_display_name(raw)
            key = self.normalizer.normalize(name)
            if key is None or key in seen:
                continue
            self._check_delimiter(name)
            seen.add(key)
            planned.append(
                _PlannedName(name, key, scope or TagType.FREEFORM, scoped=scope is not None)
            )

        existing = await self._tag_repo.get_by_normalized_names(
            session, [p.normalized_name for p in planned]
        )
        for item in planned:
            tag = existing.get(item.normalized_name)
            if tag is None:
                continue
            if scope is not None and tag.tag_type != scope.value:
                raise NameConflict(item.name, scope.value, tag.tag_type)
            item.tag_type = TagType(tag.tag_type)
            item.canonical_id = tag.merged_into_id or tag.id
        await self._lock_canonical(session, planned)
        return planned

    async def _lock_canonical(
        self, session: AsyncSession, planned: list[_PlannedName]
    ) -> None:
        """
        Share-lock the canonical tags a plan resolved to.

        The lock holds off a concurrent merge of those tags until this
        transaction commits. A merge that committed between the lookup and
        the lock has already turned a resolved tag into a synonym; follow it
        to its target and lock that instead.
        """
        redirect: dict[uuid.UUID, uuid.UUID] = {}
        pending = {p.canonical_id for p in planned if p.canonical_id is not None}
        visited: set[uuid.UUID] = set()
        while pending:
            visited |= pending
            locked = await self._tag_repo.lock_shared(session, pending)
            moved = {
                tag.id: tag.merged_into_id
                for tag in locked.values()
                if tag.merged_into_id is not None
            }
            redirect.update(moved)
            pending = set(moved.values()) - visited
        for item in planned:
            while item.canonical_id in redirect:
                logger.debug(
                    "Tag %s was merged into %s meanwhile",
                    item.canonical_id,
                    redirect[item.canonical_id],
                )
                item.canonical_id = redirect[item.canonical_id]

    async def _materialize(
        self, session: AsyncSession, plan: list[_PlannedName]
    ) -> tuple[list[uuid.UUID], list[uuid.UUID]]:
        """Create the planned tags that do not exist yet; return ordered ids."""
        wanted: list[uuid.UUID] = []
        created: list[uuid.UUID] = []
        for item in plan:
            if item.canonical_id is None:
                tag, is_new = await self._create_tag(
                    session,
                    item.name,
                    item.normalized_name,
                    item.tag_type,
                    any_type=not item.scoped,
                )
                item.canonical_id = tag.merged_into_id or tag.id
                if is_new:
                    created.append(tag.id)
            if item.canonical_id not in wanted:
                wanted.append(item.canonical_id)
        return wanted, created

    # -------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------

    async def _log_operation(
        self,
        session: AsyncSession,
        *,
        operation_type: TagOperationType,
        source_ids: list[uuid.UUID],
        target_id: Optional[uuid.UUID],
        affected_count: int,
        details: dict[str, object],
        performed_by: str,
        reason: Optional[str] = None,
    ) -> uuid.UUID:
        """Create a tag_operation_logs entry and return its id."""
        entry = await self._operation_log_repo.create(
            session,
            obj_in=TagOperationLogCreate(
                id=_new_tag_id(),
                operation_type=operation_type,
                source_tag_ids=[str(s) for s in source_ids],
                target_tag_id=target_id,
                affected_count=affected_count,
                reason=reason,
                details=details,
                performed_by=performed_by,
            ),
        )
        logger.debug(
            "Operation logged: type=%s, id=%s, sources=%s, target=%s",
            operation_type.value,
            entry.id,
            [str(s) for s in source_ids],
            str(target_id) if target_id else None,
        )
        return entry.id
