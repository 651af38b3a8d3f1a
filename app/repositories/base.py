"""
Base repository.

Shared lookups for the cycle-engine repositories. Repositories never
commit; the UnitOfWork owns the transaction and every write is flushed
inside it.
"""

from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Generic data access for one model, bound to the session of an open
    transaction.

    Example:
        class PayoutRepository(BaseRepository[Payout]):
            def __init__(self, session: AsyncSession):
                super().__init__(Payout, session)
    """

    def __init__(self, model: type[ModelType], session: AsyncSession) -> None:
        self.model = model
        self.session = session

    async def _first(self, stmt: Select[tuple[ModelType]]) -> ModelType | None:
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _all(self, stmt: Select[tuple[ModelType]]) -> list[ModelType]:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_id(self, id: str) -> ModelType | None:
        """Get a row by primary key, from the identity map when loaded."""
        return await self.session.get(self.model, id)

    async def get_by(self, **filters: Any) -> ModelType | None:
        """
        Get the row matching column filters.

        Filters are expected to hit a unique key; the first match wins
        otherwise.
        """
        return await self._first(select(self.model).filter_by(**filters))

    async def find_by(self, **filters: Any) -> list[ModelType]:
        return await self._all(select(self.model).filter_by(**filters))

    async def create(self, **data: Any) -> ModelType:
        """
        Insert a row and flush it.

        The flush surfaces unique-key violations (the per-member cycle
        Payment, the per-cycle Payout) as IntegrityError inside the open
        transaction.

        Args:
            **data: Column values

        Returns:
            Created row with database defaults loaded
        """
        entity = self.model(**data)
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity

    async def count(self, **filters: Any) -> int:
        stmt = select(func.count()).select_from(self.model)
        if filters:
            stmt = stmt.filter_by(**filters)
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def update(self, id: str, for_update: bool = False, **data: Any) -> ModelType | None:
        """
        Set column values on a row.

        Args:
            id: Primary key
            for_update: Take a row lock first (SELECT ... FOR UPDATE)
            **data: Column values

        Returns:
            Updated row or None if it does not exist
        """
        if for_update:
            stmt = select(self.model).where(self.model.id == id).with_for_update()
            entity = await self._first(stmt)
        else:
            entity = await self.get_by_id(id)
        if entity is None:
            return None

        for name, value in data.items():
            setattr(entity, name, value)
        await self.session.flush()
        return entity

    async def exists(self, **filters: Any) -> bool:
        return await self.count(**filters) > 0
