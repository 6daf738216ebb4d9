"""
Service layer for tagsync.
"""

from tagsync.services.tag_graph import (
    PARENT_TYPE_RULES,
    MergeResult,
    ParentEdgeResult,
    TagGraphService,
    TagSetResult,
)
from tagsync.services.tag_normalization import TagNormalizationService
from tagsync.services.taggable import Taggable, TaggableEntity, render_tag_string
from tagsync.services.unit_of_work import IndexTransaction

__all__ = [
    "IndexTransaction",
    "MergeResult",
    "PARENT_TYPE_RULES",
    "ParentEdgeResult",
    "TagGraphService",
    "TagNormalizationService",
    "TagSetResult",
    "Taggable",
    "TaggableEntity",
    "render_tag_string",
]
