"""
Enums for tagsync models.

Defines enumeration types used across the application for consistent
type safety and validation.
"""

from __future__ import annotations

from enum import Enum, IntEnum

from tagsync.exceptions import InvalidTagType


class TagType(str, Enum):
    """Recognized tag types of the taxonomy."""

    FANDOM = "Fandom"
    CHARACTER = "Character"
    RELATIONSHIP = "Relationship"
    FREEFORM = "Freeform"
    ARCHIVE_WARNING = "ArchiveWarning"
    MEDIA = "Media"

    @classmethod
    def parse(cls, value: "str | TagType") -> "TagType":
        """
        Convert a user-supplied value into a ``TagType``.

        Matching is case-insensitive and ignores spaces, dashes and
        underscores, so ``"archive warning"`` and ``"ARCHIVE_WARNING"`` both
        resolve to ``TagType.ARCHIVE_WARNING``.

        Raises
        ------
        InvalidTagType
            If the value names no known type.
        """
        if isinstance(value, TagType):
            return value
        if isinstance(value, str):
            key = "".join(ch for ch in value if ch not in " -_").casefold()
            for member in cls:
                if member.value.casefold() == key:
                    return member
        raise InvalidTagType(str(value))

    @property
    def display_rank(self) -> int:
        """Position of this type when rendering an entity's tag string."""
        return _DISPLAY_ORDER.index(self)


_DISPLAY_ORDER: tuple[TagType, ...] = (
    TagType.ARCHIVE_WARNING,
    TagType.MEDIA,
    TagType.FANDOM,
    TagType.RELATIONSHIP,
    TagType.CHARACTER,
    TagType.FREEFORM,
)


class TaggableType(str, Enum):
    """Content entity types that can carry tags."""

    WORK = "Work"
    SERIES = "Series"
    BOOKMARK = "Bookmark"
    EXTERNAL_WORK = "ExternalWork"


class QueuePriority(IntEnum):
    """Dispatch priority tiers of the index queue (higher drains first)."""

    LOW = 0
    DEFAULT = 1
    HIGH = 2


class QueueEntryState(str, Enum):
    """Lifecycle state of an index queue row."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class IndexAction(str, Enum):
    """Instruction sent to the search engine for one entity."""

    UPSERT = "upsert"
    DELETE = "delete"


class TagOperationType(str, Enum):
    """Audited tag graph operations."""

    CREATE = "create"
    MERGE = "merge"
    ADD_PARENT = "add_parent"
    REMOVE_PARENT = "remove_parent"
