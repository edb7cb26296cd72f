import logging
from typing import Any, Dict, Generic, Optional, Type, TypeVar, Union

from fastapi import HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from livechat.core.db import Base
from livechat.core.exceptions import StoreError

logger = logging.getLogger('livechat')

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    def __init__(self, model: Type[ModelType]):
        """
        CRUD object with default methods to Create, Read, Update.

        **Parameters**

        * `model`: A SQLAlchemy model class
        """
        self.model = model

    async def get(
            self,
            session: AsyncSession,
            obj_id: str
    ) -> Optional[ModelType]:
        db_obj = await session.execute(
            select(self.model).where(self.model.id == obj_id)
        )
        return db_obj.scalars().first()

    async def get_or_404(
            self,
            session: AsyncSession,
            obj_id: str
    ) -> ModelType:
        result = await self.get(session, obj_id)
        if not result:
            raise HTTPException(
                status_code=404,
                detail=f'{self.model.__name__} not found'
            )
        return result

    async def create(
            self,
            obj_in: CreateSchemaType,
            session: AsyncSession,
            commit: bool = True,
    ) -> ModelType:
        try:
            logger.debug(f'Создание объекта: {obj_in}')
            db_obj = self.model(**obj_in.model_dump())
            session.add(db_obj)
            await session.flush()
            await session.refresh(db_obj)

            if commit:
                await session.commit()
                await session.refresh(db_obj)
            return db_obj
        except SQLAlchemyError as e:
            logger.error(f'Database error occurred: {e}')
            await session.rollback()
            raise StoreError(
                f'Failed to create {self.model.__name__}'
            ) from e

    async def update(
            self,
            db_obj: ModelType,
            obj_in: Union[UpdateSchemaType, Dict[str, Any]],
            session: AsyncSession,
            commit: bool = True,
    ) -> ModelType:
        if isinstance(obj_in, dict):
            update_data = obj_in
        else:
            update_data = obj_in.model_dump(exclude_unset=True)
        for field, value in update_data.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)
        session.add(db_obj)
        if commit:
            await session.commit()
            await session.refresh(db_obj)
        return db_obj
