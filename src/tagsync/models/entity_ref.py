"""
Discriminated references to taggable content entities.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .enums import TaggableType


class EntityRef(BaseModel):
    """
    Reference to one content entity, ``(taggable_type, taggable_id)``.

    The set of entity kinds is closed by ``TaggableType``; there is no
    dynamic class lookup by name.

    Examples
    --------
    >>> EntityRef(taggable_type=TaggableType.WORK, taggable_id=42)
    EntityRef(taggable_type=<TaggableType.WORK: 'Work'>, taggable_id=42)
    """

    taggable_type: TaggableType
    taggable_id: int = Field(..., ge=1)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def work(cls, taggable_id: int) -> EntityRef:
        return cls(taggable_type=TaggableType.WORK, taggable_id=taggable_id)

    @classmethod
    def series(cls, taggable_id: int) -> EntityRef:
        return cls(taggable_type=TaggableType.SERIES, taggable_id=taggable_id)

    @classmethod
    def bookmark(cls, taggable_id: int) -> EntityRef:
        return cls(taggable_type=TaggableType.BOOKMARK, taggable_id=taggable_id)

    @classmethod
    def external_work(cls, taggable_id: int) -> EntityRef:
        return cls(taggable_type=TaggableType.EXTERNAL_WORK, taggable_id=taggable_id)

    def __str__(self) -> str:
        return f"{self.taggable_type.value}:{self.taggable_id}"
