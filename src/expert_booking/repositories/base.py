"""Base repository class with common CRUD operations."""

import logging
from typing import Generic, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import Base
from expert_booking.exceptions import DatabaseError, NotFoundError

logger = logging.getLogger(__name__)

# Type variable for the model type
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository with common CRUD operations."""

    # Resource name used in NotFoundError messages
    resource_name: str = "Record"

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    async def get_by_id(self, id: str, for_update: bool = False) -> Optional[ModelType]:
        """
        Get a record by ID.

        Args:
            id: Record ID
            for_update: Lock the row (SELECT ... FOR UPDATE) on backends that support it

        Returns:
            Model instance or None if not found
        """
        try:
            query = select(self.model).where(self.model.id == id)
            if for_update:
                query = query.with_for_update()
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error getting {self.model.__name__} by ID {id}: {e}")
            raise DatabaseError(f"Failed to retrieve {self.model.__name__}") from e

    async def get_or_raise(self, id: str, for_update: bool = False) -> ModelType:
        """
        Get a record by ID or raise NotFoundError.

        Raises:
            NotFoundError: If no record has this ID
        """
        instance = await self.get_by_id(id, for_update=for_update)
        if instance is None:
            raise NotFoundError(resource=self.resource_name, resource_id=id)
        return instance

    async def create(self, **kwargs) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Model field values

        Returns:
            Created model instance
        """
        try:
            instance = self.model(**kwargs)
            self.session.add(instance)
            await self.session.flush()  # Flush to get the ID
            await self.session.refresh(instance)
            logger.debug(f"Created {self.model.__name__} with ID: {instance.id}")
            return instance
        except SQLAlchemyError as e:
            logger.error(f"Error creating {self.model.__name__}: {e}")
            await self.session.rollback()
            raise DatabaseError(f"Failed to create {self.model.__name__}") from e

    async def update(self, id: str, **kwargs) -> Optional[ModelType]:
        """
        Update a record by ID.

        Args:
            id: Record ID
            **kwargs: Fields to update

        Returns:
            Updated model instance or None if not found
        """
        try:
            instance = await self.get_by_id(id)
            if not instance:
                return None
            return await self.apply(instance, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Error updating {self.model.__name__} with ID {id}: {e}")
            await self.session.rollback()
            raise DatabaseError(f"Failed to update {self.model.__name__}") from e

    async def apply(self, instance: ModelType, **kwargs) -> ModelType:
        """Set fields on an already loaded instance and flush."""
        try:
            for field, value in kwargs.items():
                if hasattr(instance, field):
                    setattr(instance, field, value)

            await self.session.flush()
            await self.session.refresh(instance)
            logger.debug(f"Updated {self.model.__name__} with ID: {instance.id}")
            return instance
        except SQLAlchemyError as e:
            logger.error(f"Error updating {self.model.__name__} with ID {instance.id}: {e}")
            await self.session.rollback()
            raise DatabaseError(f"Failed to update {self.model.__name__}") from e

    async def delete(self, id: str) -> bool:
        """
        Delete a record by ID.

        Args:
            id: Record ID

        Returns:
            True if deleted, False if not found
        """
        try:
            instance = await self.get_by_id(id)
            if not instance:
                return False

            await self.session.delete(instance)
            await self.session.flush()
            logger.debug(f"Deleted {self.model.__name__} with ID: {id}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error deleting {self.model.__name__} with ID {id}: {e}")
            await self.session.rollback()
            raise DatabaseError(f"Failed to delete {self.model.__name__}") from e
