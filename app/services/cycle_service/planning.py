"""
Cycle planning.

Builds the agreed list of cycle dates for a group (one per member) and
arms the group for its first cycle.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta
from loguru import logger

from app.models.enums import CycleFrequency
from app.models.group import Group
from app.models.membership import GroupMembership
from app.models.types import validate_cycle_dates
from app.repositories.unit_of_work import UnitOfWork
from app.utils.datetime_utils import ensure_utc
from app.utils.exceptions import CycleConfigurationError

FIXED_INTERVALS = {
    CycleFrequency.DAILY: timedelta(days=1),
    CycleFrequency.WEEKLY: timedelta(weeks=1),
    CycleFrequency.BIWEEKLY: timedelta(weeks=2),
}


def build_future_cycle_dates(
    start: datetime, frequency: CycleFrequency | str, count: int
) -> list[datetime]:
    """
    Build the ordered list of cycle dates.

    Args:
        start: Date of the first cycle
        frequency: Cycle frequency
        count: Number of cycles (one per member)

    Returns:
        ``count`` strictly increasing UTC datetimes starting at ``start``

    Raises:
        ValueError: On unknown frequency or non-positive count
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    frequency = CycleFrequency(frequency)
    start = ensure_utc(start)

    if frequency == CycleFrequency.MONTHLY:
        # Offsets from start; Jan 31 lands on Feb 28 (29), then Mar 31
        dates = [start + relativedelta(months=i) for i in range(count)]
    else:
        step = FIXED_INTERVALS[frequency]
        dates = [start + step * i for i in range(count)]
    return validate_cycle_dates(dates)


def check_payout_order(memberships: list[GroupMembership]) -> None:
    """
    Require payout orders 1..N over active memberships.

    Raises:
        ValueError: If the orders are not a contiguous permutation
    """
    orders = sorted(m.payout_order for m in memberships)
    expected = list(range(1, len(memberships) + 1))
    if orders != expected:
        raise ValueError(f"Payout order must be 1..{len(memberships)}, got {orders}")


class CyclePlanner:
    """Plans the cycle dates of a group."""

    def __init__(
        self,
        uow: UnitOfWork,
        schedule_next: Callable,
    ) -> None:
        """
        Initialize planner.

        Args:
            uow: Unit of work
            schedule_next: Coroutine function scheduling a group's next cycle
        """
        self.uow = uow
        self.schedule_next = schedule_next

    async def plan_group_cycles(
        self, group_id: str, first_cycle_date: datetime
    ) -> list[datetime]:
        """
        Store the cycle dates of a group and schedule its first cycle.

        Args:
            group_id: Group ID
            first_cycle_date: Date of cycle 1

        Returns:
            Planned cycle dates

        Raises:
            CycleConfigurationError: If the group cannot be planned
        """
        async with self.uow.transaction() as repos:
            group = await repos.groups.get_for_update(group_id)
            if group is None:
                raise CycleConfigurationError(group_id, "group not found")
            self._validate_plannable(group)

            members = await repos.memberships.find_active_by_group(group_id)
            if len(members) < 2:
                raise CycleConfigurationError(
                    group_id, f"needs at least 2 active members, has {len(members)}"
                )
            try:
                check_payout_order(members)
                dates = build_future_cycle_dates(
                    first_cycle_date, group.cycle_frequency, len(members)
                )
            except ValueError as e:
                raise CycleConfigurationError(group_id, str(e)) from e

            group.future_cycle_dates = dates
            group.next_cycle_date = dates[0]
            group.cycles_completed = False
            group.current_member_cycle_number = 1

        logger.info(
            f"Planned {len(dates)} cycles for group {group_id}: "
            f"{dates[0].isoformat()} .. {dates[-1].isoformat()}"
        )
        await self.schedule_next(group_id)
        return dates

    @staticmethod
    def _validate_plannable(group: Group) -> None:
        if not group.is_active:
            raise CycleConfigurationError(group.id, f"group is {group.status}")
        if group.cycle_started:
            raise CycleConfigurationError(group.id, "a cycle is in progress")
        if group.total_group_cycles_completed > 0:
            raise CycleConfigurationError(group.id, "cycles were already run")
        if group.contribution_amount is None or group.contribution_amount <= 0:
            raise CycleConfigurationError(group.id, "contribution amount must be positive")
        if not group.cycle_frequency:
            raise CycleConfigurationError(group.id, "cycle frequency is not set")
