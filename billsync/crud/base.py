from typing import Any, Dict, Generic, Optional, Type, TypeVar, Union
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from billsync.models.base import Base
from billsync.core.exceptions import NotFoundError

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get(self, db: AsyncSession, id: Any, *, raise_if_not_found: bool = True) -> Optional[ModelType]:
        """Get a single record by ID (not soft deleted)"""
        result = await db.execute(
            select(self.model).where(
                and_(self.model.id == id, self.model.is_deleted == False)
            )
        )
        obj = result.scalar_one_or_none()

        if raise_if_not_found and obj is None:
            raise NotFoundError(f"{self.model.__name__}")

        return obj

    async def create(self, db: AsyncSession, *, obj_in: CreateSchemaType, commit: bool = True) -> ModelType:
        """Create a new record"""
        return await self.create_with_extra(db, obj_in=obj_in, extra_data={}, commit=commit)

    async def create_with_extra(
        self,
        db: AsyncSession,
        *,
        obj_in: CreateSchemaType,
        extra_data: Dict[str, Any],
        commit: bool = True
    ) -> ModelType:
        """Create a new record with additional fields.

        With ``commit=False`` the row is only flushed so the caller can
        group several writes into one transaction.
        """
        # model_dump() preserves Python types (datetime, UUID, enums)
        obj_in_data = obj_in.model_dump(exclude_unset=True)
        obj_in_data.update(extra_data)

        db_obj = self.model(**obj_in_data)
        db.add(db_obj)
        if commit:
            await db.commit()
            await db.refresh(db_obj)
        else:
            await db.flush()
        return db_obj

    async def update(
        self,
        db: AsyncSession,
        *,
        db_obj: ModelType,
        obj_in: Union[UpdateSchemaType, Dict[str, Any]],
        commit: bool = True
    ) -> ModelType:
        """Update a record"""
        if isinstance(obj_in, dict):
            update_data = obj_in
        else:
            update_data = obj_in.model_dump(exclude_unset=True)

        for field, value in update_data.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)

        db.add(db_obj)
        if commit:
            await db.commit()
            await db.refresh(db_obj)
        else:
            await db.flush()
        return db_obj
