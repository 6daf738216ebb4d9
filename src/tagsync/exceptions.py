"""
Custom exceptions for the tagsync application.

Two families are defined. ``TaxonomyError`` covers caller-correctable
failures of tag graph mutations; they surface synchronously to the caller
and the surrounding transaction is rolled back, so no index effect is ever
emitted for them. ``IndexingError`` covers failures of the asynchronous
propagation to the search engine; the dispatcher handles them internally
and they never reach the original mutation caller.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from tagsync.models.index_document import ItemResult


class TagSyncError(Exception):
    """Base exception for all tagsync errors."""

    def __init__(self, message: str) -> None:
        """
        Initialize TagSyncError.

        Parameters
        ----------
        message : str
            Human-readable error message.
        """
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Taxonomy (caller-correctable) errors
# ---------------------------------------------------------------------------


class TaxonomyError(TagSyncError):
    """Base class for tag edits that are rejected and must be corrected."""


class InvalidTagType(TaxonomyError):
    """
    Exception raised when a tag type is not one of the recognized values.

    Attributes
    ----------
    tag_type : str
        The rejected type value.
    """

    def __init__(self, tag_type: str, message: str | None = None) -> None:
        self.tag_type = tag_type
        super().__init__(message or f"Invalid tag type: {tag_type!r}")


class InvalidTagName(TaxonomyError):
    """
    Exception raised when a tag name is blank or contains the tag delimiter.

    A name holding the delimiter would split into several tags the next time
    the entity's rendered tag string is assigned back.
    """

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid tag name {name!r}: {reason}")


class InvalidParentType(InvalidTagType):
    """
    Exception raised when a parent edge connects incompatible tag types.

    Only Character/Relationship -> Fandom and Fandom -> Media edges are
    allowed when parent type rules are enforced.
    """

    def __init__(self, child_type: str, parent_type: str) -> None:
        self.child_type = child_type
        self.parent_type = parent_type
        super().__init__(
            child_type,
            f"A {child_type} tag cannot have a {parent_type} parent",
        )


class NameConflict(TaxonomyError):
    """
    Exception raised when a normalized tag name already exists under another type.

    Attributes
    ----------
    name : str
        The requested tag name.
    requested_type : str
        The type the caller asked for.
    existing_type : str
        The type of the existing tag that collides.
    """

    def __init__(self, name: str, requested_type: str, existing_type: str) -> None:
        self.name = name
        self.requested_type = requested_type
        self.existing_type = existing_type
        super().__init__(
            f"Tag name {name!r} already exists as a {existing_type} tag "
            f"(requested {requested_type})"
        )


class InvalidMergeSource(TaxonomyError):
    """
    Exception raised when the source of a merge is not a canonical tag.

    Merging a tag that is itself already merged would create a chain, which
    the graph never allows.
    """

    def __init__(self, source_id: uuid.UUID, reason: str | None = None) -> None:
        self.source_id = source_id
        super().__init__(
            reason or f"Tag {source_id} is not canonical and cannot be merged"
        )


class InvalidMergeTarget(TaxonomyError):
    """Exception raised when a merge target is missing, merged, or of another type."""

    def __init__(self, target_id: uuid.UUID, reason: str) -> None:
        self.target_id = target_id
        super().__init__(reason)


class CycleDetected(TaxonomyError):
    """
    Exception raised when a parent edge would close a cycle in the type DAG.

    Attributes
    ----------
    child_id : uuid.UUID
        Child end of the rejected edge.
    parent_id : uuid.UUID
        Parent end of the rejected edge.
    """

    def __init__(self, child_id: uuid.UUID, parent_id: uuid.UUID) -> None:
        self.child_id = child_id
        self.parent_id = parent_id
        super().__init__(
            f"Adding parent {parent_id} to {child_id} would create a cycle"
        )


class TagNotFoundError(TaxonomyError):
    """Exception raised when a referenced tag does not exist."""

    def __init__(self, tag_ref: uuid.UUID | str) -> None:
        self.tag_ref = tag_ref
        super().__init__(f"Tag {tag_ref!s} not found")


# ---------------------------------------------------------------------------
# Indexing (internal, transient) errors
# ---------------------------------------------------------------------------


class IndexingError(TagSyncError):
    """Base class for failures of propagation to the search index."""


class AdapterUnavailable(IndexingError):
    """
    Exception raised when the search engine cannot be reached at all.

    The dispatcher nacks the whole batch and backs off.

    Attributes
    ----------
    original_error : Exception | None
        The transport error that caused this failure.
    """

    def __init__(
        self,
        message: str = "Search index adapter unavailable",
        original_error: Exception | None = None,
    ) -> None:
        self.original_error = original_error
        super().__init__(message)


class AdapterPartialFailure(IndexingError):
    """
    Exception raised when a bulk call succeeded for only some items.

    Attributes
    ----------
    results : list[ItemResult]
        Per-item outcome for every item of the batch.
    """

    def __init__(self, results: Sequence["ItemResult"]) -> None:
        self.results = list(results)
        failed = sum(1 for r in self.results if not r.ok)
        super().__init__(
            f"Bulk request failed for {failed} of {len(self.results)} items"
        )

    @property
    def failed(self) -> list["ItemResult"]:
        """Results of the items that were rejected."""
        return [r for r in self.results if not r.ok]


class EntityVanished(IndexingError):
    """Raised when a queued entity no longer exists at dispatch time."""

    def __init__(self, entity_type: str, entity_id: int) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} no longer exists")


class SourceNotRegisteredError(IndexingError):
    """Raised when no document source is registered for an entity type."""

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"No document source registered for {entity_type!r}")


class GracefulShutdownException(TagSyncError):
    """
    Raised at a safe point of a long-running loop after SIGINT/SIGTERM.

    Attributes
    ----------
    signal_received : str
        Name of the signal that requested the shutdown.
    """

    def __init__(self, message: str, signal_received: str = "SIGINT") -> None:
        self.signal_received = signal_received
        super().__init__(message)
