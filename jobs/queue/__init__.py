"""
Job queue runtime.

A generic delayed/retryable job substrate: enqueue, lease, ack, fail,
retry with backoff, failed-job retention, stalled-job recovery.
"""

from jobs.queue.base import (
    BackoffStrategy,
    HandlePausePayload,
    Job,
    JobKind,
    JobOptions,
    JobPayload,
    JobQueue,
    JobState,
    RetryPaymentPayload,
    RunCyclePayload,
    SendNotificationPayload,
    backoff_delay,
    parse_payload,
    queue_name_for,
)
from jobs.queue.memory import MemoryJobQueue

__all__ = [
    "BackoffStrategy",
    "HandlePausePayload",
    "Job",
    "JobKind",
    "JobOptions",
    "JobPayload",
    "JobQueue",
    "JobState",
    "MemoryJobQueue",
    "RetryPaymentPayload",
    "RunCyclePayload",
    "SendNotificationPayload",
    "backoff_delay",
    "parse_payload",
    "queue_name_for",
]
