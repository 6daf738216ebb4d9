"""
Base repository for tables keyed by a single primary key.

Repositories flush but never commit; the caller owns the transaction, so
index effects recorded alongside a write land in the same commit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

ModelType = TypeVar("ModelType", bound=DeclarativeBase)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)


class BaseRepository(ABC, Generic[ModelType, CreateSchemaType]):
    """Insert-and-fetch interface shared by the tag and audit repositories."""

    @abstractmethod
    async def create(
        self, session: AsyncSession, *, obj_in: CreateSchemaType
    ) -> ModelType:
        """Insert a row built from *obj_in*."""

    @abstractmethod
    async def get(self, session: AsyncSession, id: Any) -> Optional[ModelType]:
        """Fetch a row by primary key."""


class BaseSQLAlchemyRepository(BaseRepository[ModelType, CreateSchemaType]):
    """SQLAlchemy implementation over one mapped model."""

    def __init__(self, model: type[ModelType]):
        self.model = model

    async def create(
        self, session: AsyncSession, *, obj_in: CreateSchemaType
    ) -> ModelType:
        """
        Insert a row and return it with server defaults loaded.

        The row is flushed so constraint violations surface here, inside the
        caller's transaction, rather than at commit.
        """
        db_obj = self.model(**obj_in.model_dump())
        session.add(db_obj)
        await session.flush()
        await session.refresh(db_obj)
        return db_obj

    async def get(self, session: AsyncSession, id: Any) -> Optional[ModelType]:
        return await session.get(self.model, id)
