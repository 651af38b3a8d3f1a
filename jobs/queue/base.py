"""
Job queue contract.

Job kinds and their payloads form a tagged union discriminated by
``job_kind``; every payload is validated before a job is enqueued and
again when a worker picks it up.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.config.constants import (
    CYCLE_QUEUE_NAME,
    GROUP_STATUS_QUEUE_NAME,
    NOTIFICATION_QUEUE_NAME,
    PAYMENT_QUEUE_NAME,
)
from app.services.metrics_service import MetricsRecorder
from app.utils.datetime_utils import utc_now
from app.utils.exceptions import InvalidJobPayloadError


class JobKind(str, Enum):
    """Kinds of jobs the runtime carries."""

    RUN_CYCLE = "run-cycle"
    RETRY_PAYMENT = "retry-payment"
    HANDLE_PAUSE = "handle-pause"
    SEND_NOTIFICATION = "send-notification"


KIND_QUEUES = {
    JobKind.RUN_CYCLE: CYCLE_QUEUE_NAME,
    JobKind.RETRY_PAYMENT: PAYMENT_QUEUE_NAME,
    JobKind.HANDLE_PAUSE: GROUP_STATUS_QUEUE_NAME,
    JobKind.SEND_NOTIFICATION: NOTIFICATION_QUEUE_NAME,
}

# Kinds that mutate group state and therefore hold the per-group lease
GROUP_EXCLUSIVE_KINDS = frozenset(
    {JobKind.RUN_CYCLE, JobKind.RETRY_PAYMENT, JobKind.HANDLE_PAUSE}
)


def queue_name_for(kind: JobKind) -> str:
    """Queue a job kind runs on."""
    return KIND_QUEUES[kind]


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    group_id: str = Field(min_length=1)
    test_mode: bool = False


class RunCyclePayload(_Payload):
    """Run (or resume) the current cycle of a group."""

    job_kind: Literal["run-cycle"] = "run-cycle"


class RetryPaymentPayload(_Payload):
    """Retry one failed contribution."""

    job_kind: Literal["retry-payment"] = "retry-payment"
    payment_id: str = Field(min_length=1)


class HandlePausePayload(_Payload):
    """Notify members that their group was paused."""

    job_kind: Literal["handle-pause"] = "handle-pause"
    pause_reason: str | None = None


class SendNotificationPayload(_Payload):
    """Deliver one notification event."""

    job_kind: Literal["send-notification"] = "send-notification"
    event: dict[str, Any]


JobPayload = Annotated[
    RunCyclePayload | RetryPaymentPayload | HandlePausePayload | SendNotificationPayload,
    Field(discriminator="job_kind"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(data: Any) -> JobPayload:
    """
    Validate a raw payload into its typed model.

    Args:
        data: Mapping carrying ``job_kind`` and the kind's fields

    Returns:
        Typed payload

    Raises:
        InvalidJobPayloadError: If the shape does not match the kind
    """
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidJobPayloadError(f"Invalid job payload {data!r}: {e}") from e


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(frozen=True)
class JobOptions:
    """Runtime options attached to a job at enqueue time."""

    delay_ms: int = 0
    attempts: int = 5
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_ms: int = 5_000
    max_backoff_ms: int = 600_000

    def __post_init__(self) -> None:
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "delay_ms": self.delay_ms,
            "attempts": self.attempts,
            "backoff": self.backoff.value,
            "backoff_ms": self.backoff_ms,
            "max_backoff_ms": self.max_backoff_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobOptions":
        return cls(
            delay_ms=int(data.get("delay_ms", 0)),
            attempts=int(data.get("attempts", 5)),
            backoff=BackoffStrategy(data.get("backoff", BackoffStrategy.EXPONENTIAL.value)),
            backoff_ms=int(data.get("backoff_ms", 5_000)),
            max_backoff_ms=int(data.get("max_backoff_ms", 600_000)),
        )


def backoff_delay(options: JobOptions, attempts_made: int) -> int:
    """
    Delay in milliseconds before the next attempt.

    Exponential: base * 2^(n-1), capped at max_backoff_ms.
    Example with base 5s: 5s, 10s, 20s, 40s...

    Args:
        options: Job options
        attempts_made: Attempts already made (>= 1)

    Returns:
        Delay in milliseconds
    """
    if options.backoff == BackoffStrategy.FIXED:
        return options.backoff_ms
    exponent = max(attempts_made - 1, 0)
    return min(options.backoff_ms * (2**exponent), options.max_backoff_ms)


class JobState(str, Enum):
    """Lifecycle of a job inside the runtime."""

    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass
class Job:
    """A job as seen by the runtime and the dispatcher."""

    job_id: str
    kind: JobKind
    payload: JobPayload
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    run_at: float = 0.0
    enqueued_at: datetime = field(default_factory=utc_now)
    errors: list[str] = field(default_factory=list)
    lease_expires_at: float | None = None
    # Set per enqueue; tells a live message from a stale one with the same id
    token: str = ""

    @property
    def group_id(self) -> str:
        return self.payload.group_id

    @property
    def queue_name(self) -> str:
        return queue_name_for(self.kind)

    @property
    def attempts_left(self) -> int:
        return max(self.options.attempts - self.attempts_made, 0)

    def to_message(self) -> dict[str, Any]:
        """Serialize for transport (JSON-safe)."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "payload": self.payload.model_dump(mode="json"),
            "options": self.options.to_dict(),
            "enqueued_at": self.enqueued_at.isoformat(),
            "errors": list(self.errors),
            "token": self.token,
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "Job":
        """
        Rebuild a job from its transport form.

        Raises:
            InvalidJobPayloadError: If the message is malformed
        """
        try:
            kind = JobKind(message["kind"])
            job_id = str(message["job_id"])
        except (KeyError, ValueError) as e:
            raise InvalidJobPayloadError(f"Malformed job message {message!r}") from e

        payload = parse_payload(message.get("payload"))
        if payload.job_kind != kind.value:
            raise InvalidJobPayloadError(
                f"Job {job_id}: payload kind {payload.job_kind} does not match {kind.value}"
            )
        enqueued_at = message.get("enqueued_at")
        return cls(
            job_id=job_id,
            kind=kind,
            payload=payload,
            options=JobOptions.from_dict(message.get("options") or {}),
            enqueued_at=datetime.fromisoformat(enqueued_at) if enqueued_at else utc_now(),
            errors=list(message.get("errors") or []),
            token=str(message.get("token") or ""),
        )


class JobQueue(ABC):
    """
    Abstract job queue.

    Implementations guarantee: delayed execution at or after the requested
    delay, retry with backoff up to the attempt cap, retention of failed
    jobs, a per-group lease for group-exclusive kinds, and requeueing of
    jobs whose lease expired while active.
    """

    metrics: MetricsRecorder | None = None

    @abstractmethod
    async def enqueue(
        self,
        kind: JobKind,
        payload: JobPayload,
        options: JobOptions | None = None,
        job_id: str | None = None,
    ) -> Job | None:
        """
        Enqueue a job.

        Returns:
            The job, or None when a job with the same id is already pending
        """

    @abstractmethod
    async def lease(self, job: Job) -> bool:
        """
        Claim a job for processing.

        Returns:
            False when the job must not run now: it was superseded
            (state set to SUPERSEDED) or another job holds the group lease
        """

    @abstractmethod
    async def ack(self, job: Job) -> None:
        """Mark a job completed and release its lease."""

    @abstractmethod
    async def fail(self, job: Job, error: BaseException | str) -> bool:
        """
        Record a failed attempt and release the lease.

        Returns:
            True if the job will be retried, False if it was retained as failed
        """

    @abstractmethod
    async def remove_pending(self, kind: JobKind, group_id: str) -> int:
        """Remove delayed/waiting jobs of a kind for a group; return the count."""

    @abstractmethod
    async def pending_jobs(self, kind: JobKind | None = None) -> list[Job]:
        """Delayed and waiting jobs, optionally of one kind."""

    @abstractmethod
    async def is_in_flight(self, group_id: str) -> bool:
        """Check if a job currently holds the group's lease."""

    @abstractmethod
    async def failed_jobs(self, limit: int = 100) -> list[Job]:
        """Retained failed jobs, most recent first."""

    @abstractmethod
    async def requeue_stalled(self) -> int:
        """Requeue active jobs whose lease expired; return the count."""

    @abstractmethod
    async def depth(self) -> dict[str, int]:
        """Job counts by state."""

    async def close(self) -> None:
        """Release connections."""

    def _record_created(self, job: Job) -> None:
        if self.metrics is not None:
            self.metrics.record_job_created(MetricsRecorder.key(job.queue_name, job.kind.value))
