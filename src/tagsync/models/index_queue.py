"""
Index queue models.

Defines Pydantic models for queue entries handed to dispatcher workers and
for the per-tier depth/age metrics exposed to operators.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tagsync.utils.timeutils import as_utc

from .enums import QueueEntryState, QueuePriority


class QueueEntry(BaseModel):
    """A queue row as seen by a dispatcher worker."""

    id: int
    entity_type: str
    entity_id: int
    priority: QueuePriority
    state: QueueEntryState
    enqueued_at: datetime
    lease_id: Optional[uuid.UUID] = None
    leased_until: Optional[datetime] = None
    attempts: int = Field(default=0, ge=0)
    available_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("enqueued_at", "leased_until", "available_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Attach UTC to naive timestamps read back from SQLite."""
        return as_utc(v)

    @property
    def key(self) -> tuple[str, int]:
        """Dedup key of the entry."""
        return (self.entity_type, self.entity_id)


class TierStats(BaseModel):
    """Queue depth and age for one priority tier."""

    priority: QueuePriority
    pending: int = Field(default=0, ge=0)
    in_flight: int = Field(default=0, ge=0)
    oldest_enqueued_at: Optional[datetime] = None
    oldest_age_seconds: float = Field(default=0.0, ge=0)
