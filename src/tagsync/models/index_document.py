"""
Models exchanged with the search index adapter.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import IndexAction


class IndexItem(BaseModel):
    """One document (or deletion) submitted to the search engine."""

    entity_type: str
    entity_id: int
    action: IndexAction = IndexAction.UPSERT
    document: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> tuple[str, int]:
        return (self.entity_type, self.entity_id)


class ItemResult(BaseModel):
    """Per-item acknowledgment reported by the adapter."""

    entity_type: str
    entity_id: int
    ok: bool
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> tuple[str, int]:
        return (self.entity_type, self.entity_id)
