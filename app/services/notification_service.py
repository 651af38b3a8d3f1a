"""
Notification service.

Member-facing events leave the cycle engine through an outbox: events are
collected while a store transaction is open and published as
``send-notification`` jobs only after it commits. Delivery runs in its own
job with its own retry policy, so a failing notifier never blocks or
fails a cycle run.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum

import aiohttp
from loguru import logger
from pydantic import BaseModel, Field

from app.config.constants import NOTIFICATION_BACKOFF_BASE_MS, NOTIFICATION_JOB_ATTEMPTS
from app.models.group import Group
from app.models.user import User
from jobs.queue.base import (
    BackoffStrategy,
    JobKind,
    JobOptions,
    JobQueue,
    SendNotificationPayload,
)


class NotificationKind(str, Enum):
    """Notification event kinds."""

    PAYMENT_FAILED = "payment_failed"
    GROUP_PAUSED = "group_paused"
    CONTRIBUTION_REMINDER = "contribution_reminder"
    PAYOUT_RECORDED = "payout_recorded"


class NotificationEvent(BaseModel):
    """Recipient identity plus the minimal context to render a message."""

    kind: NotificationKind
    group_id: str
    user_id: str
    email: str
    name: str | None = None
    context: dict[str, str] = Field(default_factory=dict)


def payment_failed_event(
    user: User, group: Group, amount: Decimal, retry_count: int, reason: str | None
) -> NotificationEvent:
    return NotificationEvent(
        kind=NotificationKind.PAYMENT_FAILED,
        group_id=group.id,
        user_id=user.id,
        email=user.email,
        name=user.full_name,
        context={
            "group_name": group.name,
            "amount": str(amount),
            "retry_count": str(retry_count),
            "reason": reason or "",
        },
    )


def group_paused_event(user: User, group: Group, reason: str | None) -> NotificationEvent:
    return NotificationEvent(
        kind=NotificationKind.GROUP_PAUSED,
        group_id=group.id,
        user_id=user.id,
        email=user.email,
        name=user.full_name,
        context={"group_name": group.name, "pause_reason": reason or ""},
    )


def contribution_reminder_event(
    user: User, group: Group, amount: Decimal, cycle_date: datetime
) -> NotificationEvent:
    return NotificationEvent(
        kind=NotificationKind.CONTRIBUTION_REMINDER,
        group_id=group.id,
        user_id=user.id,
        email=user.email,
        name=user.full_name,
        context={
            "group_name": group.name,
            "amount": str(amount),
            "cycle_date": cycle_date.isoformat(),
        },
    )


def payout_recorded_event(
    user: User, group: Group, amount: Decimal, cycle_number: int
) -> NotificationEvent:
    return NotificationEvent(
        kind=NotificationKind.PAYOUT_RECORDED,
        group_id=group.id,
        user_id=user.id,
        email=user.email,
        name=user.full_name,
        context={
            "group_name": group.name,
            "amount": str(amount),
            "cycle_number": str(cycle_number),
        },
    )


class NotificationOutbox:
    """Events collected inside a transaction, published after commit."""

    def __init__(self) -> None:
        self._events: list[NotificationEvent] = []

    def add(self, event: NotificationEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[NotificationEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    async def flush(self, queue: JobQueue) -> int:
        """
        Enqueue one send-notification job per event.

        Enqueue failures are logged and dropped.

        Args:
            queue: Job queue

        Returns:
            Number of events enqueued
        """
        options = JobOptions(
            attempts=NOTIFICATION_JOB_ATTEMPTS,
            backoff=BackoffStrategy.EXPONENTIAL,
            backoff_ms=NOTIFICATION_BACKOFF_BASE_MS,
        )
        sent = 0
        events, self._events = self._events, []
        for event in events:
            try:
                await queue.enqueue(
                    JobKind.SEND_NOTIFICATION,
                    SendNotificationPayload(
                        group_id=event.group_id, event=event.model_dump(mode="json")
                    ),
                    options,
                )
                sent += 1
            except Exception as e:
                logger.error(
                    f"Failed to enqueue {event.kind.value} notification "
                    f"for user {event.user_id}: {e}"
                )
        return sent


class Notifier(ABC):
    """Delivery channel for notification events."""

    @abstractmethod
    async def send(self, event: NotificationEvent) -> None:
        """Deliver one event; raise to have the job retried."""

    async def close(self) -> None:
        """Release resources."""


class LogNotifier(Notifier):
    """Writes events to the log (used when no webhook is configured)."""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notification {event.kind.value} -> {event.email} "
            f"(group {event.group_id}): {event.context}"
        )


class WebhookNotifier(Notifier):
    """Posts events as JSON to a webhook."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def send(self, event: NotificationEvent) -> None:
        session = await self._get_session()
        async with session.post(self.url, json=event.model_dump(mode="json")) as response:
            if response.status >= 400:
                body = await response.text()
                raise RuntimeError(
                    f"Notification webhook returned HTTP {response.status}: {body[:200]}"
                )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class NotificationService:
    """Delivers queued notification events."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def deliver(self, payload: SendNotificationPayload) -> NotificationEvent:
        """
        Deliver the event carried by a send-notification job.

        Args:
            payload: Job payload

        Returns:
            The delivered event
        """
        event = NotificationEvent.model_validate(payload.event)
        await self.notifier.send(event)
        logger.debug(f"Delivered {event.kind.value} notification to user {event.user_id}")
        return event
