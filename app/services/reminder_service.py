"""
Contribution reminders.

Daily pass that tells members of active groups that their contribution
will be collected in a few days.
"""

from datetime import datetime, timedelta

from loguru import logger

from app.config.settings import Settings
from app.repositories.unit_of_work import UnitOfWork
from app.services.notification_service import NotificationOutbox, contribution_reminder_event
from app.utils.datetime_utils import ensure_utc
from jobs.queue.base import JobQueue


class ReminderService:
    """Queues contribution_reminder notifications."""

    def __init__(self, uow: UnitOfWork, queue: JobQueue, settings: Settings) -> None:
        self.uow = uow
        self.queue = queue
        self.settings = settings

    async def send_contribution_reminders(self, now: datetime) -> int:
        """
        Queue reminders for groups whose next cycle falls on the target day.

        The target day is ``reminder_days_ahead`` days after ``now`` (UTC,
        whole day).

        Args:
            now: Current time

        Returns:
            Number of reminders queued
        """
        target = ensure_utc(now) + timedelta(days=self.settings.reminder_days_ahead)
        start = target.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)

        outbox = NotificationOutbox()
        async with self.uow.transaction() as repos:
            groups = await repos.groups.find_due_between(start, end)
            for group in groups:
                if not group.contribution_amount or group.next_cycle_date is None:
                    continue
                members = await repos.memberships.find_active_by_group(group.id)
                for member in members:
                    outbox.add(
                        contribution_reminder_event(
                            member.user, group, group.contribution_amount, group.next_cycle_date
                        )
                    )

        queued = await outbox.flush(self.queue)
        logger.info(
            f"Queued {queued} contribution reminder(s) for {len(groups)} group(s) "
            f"due {start.date().isoformat()}"
        )
        return queued
