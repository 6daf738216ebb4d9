"""
Database module for tagsync.

Contains the SQLAlchemy models and Alembic migration management for the
relational storage backend.
"""

from __future__ import annotations

from .models import Base, IndexQueueEntry, Tag, Tagging, TagOperationLog, TagParent

__all__: list[str] = [
    "Base",
    "IndexQueueEntry",
    "Tag",
    "TagOperationLog",
    "TagParent",
    "Tagging",
]
