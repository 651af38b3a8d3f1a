"""
Unit of work.

One store transaction around one cycle-engine operation. Every service
receives a UnitOfWork through its constructor; tests substitute an
in-memory implementation with the same interface.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.repositories.group_cycle_repository import GroupCycleRepository
from app.repositories.group_repository import GroupRepository
from app.repositories.membership_repository import MembershipRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.payout_repository import PayoutRepository
from app.repositories.transaction_repository import TransactionRepository
from app.repositories.user_repository import UserRepository
from app.utils.exceptions import TransactionTimeoutError


@dataclass
class Repositories:
    """Repositories bound to one transaction."""

    users: UserRepository
    groups: GroupRepository
    memberships: MembershipRepository
    payments: PaymentRepository
    payouts: PayoutRepository
    cycles: GroupCycleRepository
    transactions: TransactionRepository

    @classmethod
    def from_session(cls, session: AsyncSession) -> "Repositories":
        return cls(
            users=UserRepository(session),
            groups=GroupRepository(session),
            memberships=MembershipRepository(session),
            payments=PaymentRepository(session),
            payouts=PayoutRepository(session),
            cycles=GroupCycleRepository(session),
            transactions=TransactionRepository(session),
        )


class UnitOfWork:
    """Transaction factory over an async session maker."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        timeout: float,
    ) -> None:
        """
        Initialize unit of work.

        Args:
            session_maker: Session factory bound to the engine
            timeout: Seconds before an open transaction is rolled back
        """
        self.session_maker = session_maker
        self.timeout = timeout

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Repositories]:
        """
        Open a transaction and yield its repositories.

        Commits when the block exits normally, rolls back on any
        exception. Exceeding the timeout rolls back and raises
        TransactionTimeoutError.

        Yields:
            Repositories bound to the transaction
        """
        async with self.session_maker() as session:
            try:
                async with asyncio.timeout(self.timeout):
                    async with session.begin():
                        yield Repositories.from_session(session)
            except TimeoutError as e:
                logger.error(
                    f"Transaction exceeded {self.timeout}s and was rolled back"
                )
                raise TransactionTimeoutError(
                    f"Transaction exceeded {self.timeout}s"
                ) from e
