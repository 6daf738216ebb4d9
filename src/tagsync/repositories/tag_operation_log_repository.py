"""
Tag operation log repository for audit trail management.

Handles creation and listing of tag operation log entries written by tag
graph mutations.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from tagsync.db.models import TagOperationLog as TagOperationLogDB
from tagsync.models.enums import TagOperationType
from tagsync.models.tag_operation_log import TagOperationLogCreate
from tagsync.repositories.base import BaseSQLAlchemyRepository


class TagOperationLogRepository(
    BaseSQLAlchemyRepository[TagOperationLogDB, TagOperationLogCreate]
):
    """Repository for tag operation log entries."""

    def __init__(self) -> None:
        """Initialize repository with TagOperationLog model."""
        super().__init__(TagOperationLogDB)

    async def get_recent(
        self,
        session: AsyncSession,
        *,
        operation_type: Optional[TagOperationType] = None,
        limit: int = 20,
    ) -> list[TagOperationLogDB]:
        """
        Return the most recent log entries, newest first.

        Parameters
        ----------
        session : AsyncSession
            Database session.
        operation_type : Optional[TagOperationType]
            Restrict to one operation type.
        limit : int
            Maximum number of entries.
        """
        query = select(TagOperationLogDB)
        if operation_type is not None:
            query = query.where(TagOperationLogDB.operation_type == operation_type.value)
        result = await session.execute(
            query.order_by(desc(TagOperationLogDB.performed_at)).limit(limit)
        )
        return list(result.scalars().all())
