"""
User repository.

Members are read-only for the cycle engine: identity, processor refs and
the verified payment method flag.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.repositories.base import BaseRepository


class UserRepository(BaseRepository[User]):
    """User repository."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(User, session)
