"""
Pydantic models and enums shared across tagsync layers.
"""

from __future__ import annotations

from .entity_ref import EntityRef
from .enums import (
    IndexAction,
    QueueEntryState,
    QueuePriority,
    TaggableType,
    TagOperationType,
    TagType,
)
from .index_document import IndexItem, ItemResult
from .index_effect import IndexEffect, MutationResult, collapse_effects
from .index_queue import QueueEntry, TierStats
from .tag import Tag, TagCreate
from .tag_operation_log import TagOperationLog, TagOperationLogCreate

__all__ = [
    "EntityRef",
    "IndexAction",
    "IndexEffect",
    "IndexItem",
    "ItemResult",
    "MutationResult",
    "QueueEntry",
    "QueueEntryState",
    "QueuePriority",
    "Tag",
    "TagCreate",
    "TagOperationLog",
    "TagOperationLogCreate",
    "TagOperationType",
    "TagType",
    "TaggableType",
    "TierStats",
    "collapse_effects",
]
