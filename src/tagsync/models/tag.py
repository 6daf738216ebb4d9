"""
Tag models for the taxonomy graph.

Defines Pydantic models for tags, which are either canonical or merged into
exactly one canonical tag.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import TagType


class TagBase(BaseModel):
    """Base model for tag data."""

    name: str = Field(..., min_length=1, max_length=150, description="Display name")
    tag_type: TagType = Field(..., description="Taxonomy type of the tag")

    model_config = ConfigDict(
        validate_assignment=True,
    )

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Strip surrounding whitespace and reject blank names."""
        stripped = " ".join(v.split())
        if not stripped:
            raise ValueError("Tag name cannot be blank")
        return stripped

    @field_validator("tag_type", mode="before")
    @classmethod
    def parse_tag_type(cls, v: object) -> TagType:
        """Accept loose spellings of the tag type."""
        return TagType.parse(v)  # type: ignore[arg-type]


class TagCreate(TagBase):
    """Model for creating tags."""

    model_config = ConfigDict(use_enum_values=True)

    id: uuid.UUID = Field(..., description="Tag UUID (UUIDv7)")
    normalized_name: str = Field(..., min_length=1, max_length=150)
    canonical: bool = Field(default=True)
    merged_into_id: Optional[uuid.UUID] = Field(default=None)


class Tag(TagBase):
    """Full tag model with identifiers and merge state."""

    id: uuid.UUID = Field(..., description="Tag UUID (UUIDv7)")
    normalized_name: str = Field(..., description="Case/whitespace-folded name")
    canonical: bool = Field(..., description="Whether this tag is authoritative")
    merged_into_id: Optional[uuid.UUID] = Field(
        default=None, description="Canonical tag this synonym resolves to"
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
    )

    @model_validator(mode="after")
    def canonical_xor_merged(self) -> Tag:
        """A canonical tag is never merged; a synonym always is."""
        if self.canonical and self.merged_into_id is not None:
            raise ValueError("A canonical tag cannot have merged_into_id")
        if not self.canonical and self.merged_into_id is None:
            raise ValueError("merged_into_id is required for non-canonical tags")
        if self.merged_into_id is not None and self.merged_into_id == self.id:
            raise ValueError("A tag cannot be merged into itself")
        return self

    @property
    def effective_id(self) -> uuid.UUID:
        """Identity used by every downstream consumer."""
        return self.merged_into_id if self.merged_into_id is not None else self.id
