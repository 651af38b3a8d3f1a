"""
Cycle engine actors.

One dramatiq actor per job kind. Each rebuilds the Job from its message,
takes a slot from its queue's concurrency limiter and hands the job to
the dispatcher. Retries are dramatiq's: a failed dispatch re-raises and
the Retries middleware re-delivers the message with backoff.
"""

from typing import Any

import dramatiq
from dramatiq.middleware import CurrentMessage
from loguru import logger

from app.config.constants import (
    CYCLE_QUEUE_NAME,
    GROUP_STATUS_QUEUE_NAME,
    NOTIFICATION_QUEUE_NAME,
    PAYMENT_QUEUE_NAME,
)
from app.config.settings import settings
from app.utils.exceptions import InvalidJobPayloadError
from jobs.async_runner import run_async
from jobs.broker import get_rate_limiter
from jobs.context import get_context
from jobs.queue.base import Job, JobKind

# Delay before a job throttled by the concurrency limiter is delivered again
THROTTLE_DELAY_MS = 5_000


def _process(message: dict[str, Any]) -> None:
    context = get_context()
    try:
        job = Job.from_message(message)
    except InvalidJobPayloadError as e:
        context.metrics.record_critical_error("jobs:invalid-message", str(e))
        logger.error(f"Dropping malformed job message: {e}")
        return

    current = CurrentMessage.get_current_message()
    retries = current.options.get("retries", 0) if current is not None else 0
    job.attempts_made = retries + 1

    with get_rate_limiter(job.queue_name).acquire(raise_on_failure=False) as acquired:
        if not acquired:
            logger.debug(f"Queue {job.queue_name} at concurrency limit, delaying {job.job_id}")
            context.metrics.record_queue_event(job.queue_name, "throttled")
            run_async(context.queue.resend(job, THROTTLE_DELAY_MS, retries=retries))
            return
        run_async(context.dispatcher.dispatch(job))


@dramatiq.actor(
    actor_name="run_cycle",
    queue_name=CYCLE_QUEUE_NAME,
    time_limit=settings.job_time_limit_ms,
)
def run_cycle(message: dict[str, Any]) -> None:
    """Run the scheduled cycle of one group."""
    _process(message)


@dramatiq.actor(
    actor_name="retry_payment",
    queue_name=PAYMENT_QUEUE_NAME,
    time_limit=settings.job_time_limit_ms,
)
def retry_payment(message: dict[str, Any]) -> None:
    """Retry one failed contribution."""
    _process(message)


@dramatiq.actor(
    actor_name="handle_pause",
    queue_name=GROUP_STATUS_QUEUE_NAME,
    time_limit=settings.job_time_limit_ms,
)
def handle_pause(message: dict[str, Any]) -> None:
    """Notify the members of a paused group."""
    _process(message)


@dramatiq.actor(
    actor_name="send_notification",
    queue_name=NOTIFICATION_QUEUE_NAME,
    time_limit=settings.job_time_limit_ms,
)
def send_notification(message: dict[str, Any]) -> None:
    """Deliver one notification event."""
    _process(message)


ACTORS: dict[JobKind, dramatiq.Actor] = {
    JobKind.RUN_CYCLE: run_cycle,
    JobKind.RETRY_PAYMENT: retry_payment,
    JobKind.HANDLE_PAUSE: handle_pause,
    JobKind.SEND_NOTIFICATION: send_notification,
}
