"""
Database models for tagsync.

This module contains the SQLAlchemy models for the tag graph (tags, type
hierarchy edges, polymorphic taggings), the index queue, and the tag
operation audit log.
"""

from __future__ import annotations

import datetime
import uuid
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Tag(Base):
    """A taxonomy tag, canonical or merged into exactly one canonical tag."""

    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String(150), nullable=False, unique=True
    )
    tag_type: Mapped[str] = mapped_column(String(20), nullable=False)  # TagType
    canonical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    merged_into_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("tags.id"), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    merged_into: Mapped[Optional["Tag"]] = relationship(
        "Tag", remote_side="Tag.id", foreign_keys=[merged_into_id]
    )

    __table_args__ = (
        CheckConstraint(
            "(canonical AND merged_into_id IS NULL) OR "
            "(NOT canonical AND merged_into_id IS NOT NULL)",
            name="ck_tags_canonical_xor_merged",
        ),
        CheckConstraint("merged_into_id IS NULL OR merged_into_id <> id",
                        name="ck_tags_no_self_merge"),
        Index("ix_tags_merged_into_id", "merged_into_id"),
        Index("ix_tags_tag_type", "tag_type"),
    )


class TagParent(Base):
    """Directed edge of the tag type DAG (child belongs to parent)."""

    __tablename__ = "tag_parents"

    child_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )
    parent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("child_id <> parent_id", name="ck_tag_parents_no_loop"),
        Index("ix_tag_parents_parent_id", "parent_id"),
    )


class Tagging(Base):
    """Polymorphic association between a content entity and a canonical tag."""

    __tablename__ = "taggings"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    taggable_type: Mapped[str] = mapped_column(String(30), nullable=False)
    taggable_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tag_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tags.id"), nullable=False
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    tag: Mapped["Tag"] = relationship("Tag")

    __table_args__ = (
        UniqueConstraint(
            "taggable_type", "taggable_id", "tag_id", name="uq_taggings_triple"
        ),
        Index("ix_taggings_tag_id", "tag_id"),
    )


class IndexQueueEntry(Base):
    """Pending or in-flight reindex work for one entity."""

    __tablename__ = "index_queue_entries"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)  # QueuePriority
    state: Mapped[str] = mapped_column(
        String(12), nullable=False, default="pending"
    )  # QueueEntryState
    enqueued_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    lease_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    leased_until: Mapped[Optional[datetime.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Not leased before this time; NULL means eligible now
    available_at: Mapped[Optional[datetime.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # At most one pending and one in-flight row per entity
        UniqueConstraint(
            "entity_type", "entity_id", "state", name="uq_index_queue_entity_state"
        ),
        CheckConstraint(
            "state IN ('pending', 'in_flight')", name="ck_index_queue_state"
        ),
        Index("ix_index_queue_dispatch_order", "state", "priority", "enqueued_at"),
        Index("ix_index_queue_leased_until", "leased_until"),
    )


class TagOperationLog(Base):
    """Audit trail of tag graph operations."""

    __tablename__ = "tag_operation_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    source_tag_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    target_tag_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    affected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    performed_by: Mapped[str] = mapped_column(
        String(100), nullable=False, default="cli"
    )
    performed_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
