"""
Tag operation log models for the audit trail of tag graph operations.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import TagOperationType


class TagOperationLogCreate(BaseModel):
    """Model for creating tag operation log entries."""

    id: uuid.UUID
    operation_type: TagOperationType
    source_tag_ids: list[str] = Field(
        default_factory=list,
        description="Source tag UUID strings (stored as JSON)",
    )
    target_tag_id: Optional[uuid.UUID] = None
    affected_count: int = Field(default=0, ge=0)
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    performed_by: str = Field(default="cli", max_length=100)

    model_config = ConfigDict(use_enum_values=True)


class TagOperationLog(BaseModel):
    """Full tag operation log entry."""

    id: uuid.UUID
    operation_type: TagOperationType
    source_tag_ids: list[str]
    target_tag_id: Optional[uuid.UUID] = None
    affected_count: int
    reason: Optional[str] = None
    details: dict[str, Any]
    performed_by: str
    performed_at: datetime

    model_config = ConfigDict(from_attributes=True)
