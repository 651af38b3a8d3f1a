"""
Post-commit side effects of a cycle operation.

Jobs and notifications produced while a store transaction is open are
collected here and published only after the transaction commits, so a
rolled-back run never leaves retry jobs or messages behind.
"""

from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from app.models.enums import GroupStatus, PauseReason
from app.models.group import Group
from app.services.notification_service import NotificationEvent, NotificationOutbox
from jobs.queue.base import HandlePausePayload, JobKind, JobOptions, JobPayload, JobQueue


@dataclass(frozen=True)
class QueuedJob:
    """A job waiting for the transaction to commit."""

    kind: JobKind
    payload: JobPayload
    options: JobOptions
    job_id: str


class CycleEffects:
    """Collects jobs and notifications during a transaction."""

    def __init__(self) -> None:
        self.jobs: list[QueuedJob] = []
        self.notifications = NotificationOutbox()

    def add_job(
        self, kind: JobKind, payload: JobPayload, options: JobOptions, job_id: str
    ) -> None:
        self.jobs.append(QueuedJob(kind, payload, options, job_id))

    def notify(self, event: NotificationEvent) -> None:
        self.notifications.add(event)

    async def publish(self, queue: JobQueue) -> None:
        """
        Publish everything collected.

        Notification enqueue failures are logged by the outbox; job
        enqueue failures propagate to the caller's job runtime.
        """
        await self.notifications.flush(queue)
        jobs, self.jobs = self.jobs, []
        for queued in jobs:
            job = await queue.enqueue(
                queued.kind, queued.payload, queued.options, job_id=queued.job_id
            )
            if job is None:
                logger.debug(f"Job {queued.job_id} already queued")


def mark_group_paused(
    group: Group,
    reason: PauseReason,
    effects: CycleEffects,
    options: JobOptions,
    paused_at: datetime,
) -> bool:
    """
    Pause a locked group and queue the pause handling job.

    Args:
        group: Group loaded for update
        reason: Pause reason
        effects: Collector for the handle-pause job
        options: Options of the handle-pause job
        paused_at: Pause time, part of the handle-pause job id

    Returns:
        False if the group was already paused
    """
    if group.status == GroupStatus.PAUSED.value:
        return False

    group.status = GroupStatus.PAUSED.value
    group.pause_reason = reason.value
    effects.add_job(
        JobKind.HANDLE_PAUSE,
        HandlePausePayload(group_id=group.id, pause_reason=reason.value),
        options,
        job_id=f"handle-pause:{group.id}:{int(paused_at.timestamp())}",
    )
    logger.warning(f"Group {group.id} paused: {reason.value}")
    return True
