"""
Exception handling utilities.

Defines categorized exception types for the cycle engine and the job
runtime. The job dispatcher uses the category helpers to decide between
"ack and report" and "fail and let the runtime retry".
"""


class CycleError(Exception):
    """Base class for cycle engine errors."""


class CycleConfigurationError(CycleError):
    """
    Group cannot run: missing, not active, bad contribution amount.

    Fatal to the current run and never retried; operators must act.
    """

    def __init__(self, group_id: str, reason: str) -> None:
        self.group_id = group_id
        self.reason = reason
        super().__init__(f"Group {group_id}: {reason}")


class CycleIntegrityError(CycleError):
    """A write inside the cycle transaction did not stick; roll back."""


class CycleDeferredError(CycleError):
    """Some members were skipped because the processor circuit was open."""

    def __init__(self, group_id: str, deferred_members: int) -> None:
        self.group_id = group_id
        self.deferred_members = deferred_members
        super().__init__(
            f"Group {group_id}: {deferred_members} member(s) deferred "
            f"while payment processor circuit is open"
        )


class TransactionTimeoutError(CycleError):
    """The store transaction timed out and was rolled back."""


class PaymentGatewayError(Exception):
    """Transient failure of a single charge (network, 5xx, timeout)."""


class PaymentDeclinedError(PaymentGatewayError):
    """Processor definitively declined the charge."""


class JobQueueError(Exception):
    """Queue substrate unavailable or rejected an operation."""


class InvalidJobPayloadError(JobQueueError):
    """Job payload does not match the shape required by its kind."""


class JobDeferredError(JobQueueError):
    """Job could not start because another job holds its group lease."""


# Exception categories based on handling strategy

# Ack and report - retrying cannot help
NOT_RETRYABLE = (
    CycleConfigurationError,
    InvalidJobPayloadError,
)


def is_configuration_error(exc: BaseException) -> bool:
    """
    Check if exception is a configuration error.

    Args:
        exc: Exception to check

    Returns:
        True if the job must be acked without retry
    """
    return isinstance(exc, NOT_RETRYABLE)


def is_retryable(exc: BaseException) -> bool:
    """
    Check if exception should go back to the runtime for retry.

    Unknown exceptions are treated as infrastructure failures and retried.

    Args:
        exc: Exception to check

    Returns:
        True if the job should be retried
    """
    return not is_configuration_error(exc)
