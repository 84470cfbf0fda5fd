"""
Base Data Access Object (DAO) class.

WHY: Services never build queries themselves; each table gets a DAO that
owns its lookups, so the rules in the services read as business logic and
tests can exercise them against any session.

Transactions belong to the caller. DAOs flush so generated ids and
defaults are available, but never commit.
"""

from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Generic create/read/update for one model.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    def _filtered(self, query: Select, **filters: Any) -> Select:
        for column, value in filters.items():
            if not hasattr(self.model, column):
                raise AttributeError(f"{self.model.__name__} has no column {column!r}")
            query = query.where(getattr(self.model, column) == value)
        return query

    async def create(self, **values: Any) -> ModelType:
        """
        Insert a row and return it with server-generated fields loaded.

        Raises:
            IntegrityError: If a unique constraint is violated
        """
        instance = self.model(**values)
        self.session.add(instance)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: int) -> Optional[ModelType]:
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_all(self, skip: int = 0, limit: int = 100, **filters: Any) -> List[ModelType]:
        """
        Rows matching equality filters, oldest first.

        Example:
            await NotificationDAO(session).get_all(user_id=5)
        """
        query = self._filtered(select(self.model), **filters)
        result = await self.session.execute(query.order_by(self.model.id).offset(skip).limit(limit))
        return list(result.scalars().all())

    async def update(self, id: int, **values: Any) -> Optional[ModelType]:
        """
        Overwrite columns on one row, last writer wins.

        WHY: Fine for rows without concurrent writers (users, notifications).
        Subscription rows go through SubscriptionDAO.compare_and_swap instead.

        Returns:
            The refreshed row, or None if it does not exist
        """
        result = await self.session.execute(
            update(self.model).where(self.model.id == id).values(**values).returning(self.model)
        )
        instance = result.scalar_one_or_none()
        if instance is not None:
            await self.session.refresh(instance)
        return instance
