"""
Circuit breaker.

Protects the cycle engine from a failing external payment processor.

State machine:
    CLOSED    -> run the operation; count consecutive failures, open at threshold.
    OPEN      -> short-circuit to the fallback until reset_timeout elapses,
                 then the next call moves to HALF_OPEN.
    HALF_OPEN -> run the operation; N consecutive successes close the circuit,
                 any failure reopens it and restarts the timeout.

State is process-local: each worker process protects its own calls.
"""

import threading
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Circuit breaker around an async dependency.

    Failures are exceptions raised by the wrapped operation. Exceptions
    listed in ignored_exceptions are business outcomes (e.g. a declined
    charge): they are re-raised but count as a healthy response.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        reset_timeout: float,
        half_open_success_threshold: int = 2,
        fallback: Any = None,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize circuit breaker.

        Args:
            name: Identifier used in logs and status output
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds the circuit stays OPEN before probing
            half_open_success_threshold: Successes in HALF_OPEN needed to close
            fallback: Value returned while the circuit is OPEN
            ignored_exceptions: Exceptions that do not count as failures
            clock: Monotonic clock (injectable for tests)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if half_open_success_threshold < 1:
            raise ValueError("half_open_success_threshold must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_success_threshold = half_open_success_threshold
        self.fallback = fallback
        self.ignored_exceptions = ignored_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt = 0.0
        self._last_error: str | None = None
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reports HALF_OPEN."""
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and self._clock() >= self._next_attempt
            ):
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                logger.info(f"Circuit {self.name} state changed from OPEN to HALF_OPEN")
            return self._state

    def allow_request(self) -> bool:
        """Check whether the next call may reach the dependency."""
        return self.state != CircuitState.OPEN

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T | Any:
        """
        Execute an async operation with circuit breaker protection.

        Args:
            operation: Zero-argument coroutine function

        Returns:
            Result of the operation, or the fallback while OPEN

        Raises:
            Whatever the operation raises (after it has been counted)
        """
        if not self.allow_request():
            logger.warning(f"Circuit {self.name} is OPEN - using fallback response")
            return self.fallback

        try:
            result = await operation()
        except self.ignored_exceptions:
            self.record_success()
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful call, closing a HALF_OPEN circuit at threshold."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.half_open_success_threshold:
                    logger.info(
                        f"Circuit {self.name} recovered "
                        f"({self._success_count} successes) - changing to CLOSED"
                    )
                    self._close()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call, opening the circuit when appropriate."""
        with self._lock:
            if error is not None:
                self._last_error = str(error)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit {self.name} failed in HALF_OPEN state - reopening circuit"
                )
                self._open()
                return

            self._failure_count += 1
            self._success_count = 0

            if self._failure_count >= self.failure_threshold:
                logger.error(
                    f"Circuit {self.name} failure threshold reached "
                    f"({self._failure_count}/{self.failure_threshold}) - opening circuit"
                )
                self._open()

    def force_close(self) -> None:
        """Force the circuit CLOSED (manual operator override)."""
        logger.warning(f"Circuit {self.name} forced to CLOSED state manually")
        with self._lock:
            self._close()

    def reset(self) -> None:
        """Reset to the initial state."""
        with self._lock:
            self._close()
        logger.info(f"Circuit {self.name} reset to initial state")

    def status(self) -> dict[str, Any]:
        """Get circuit status for health output."""
        state = self.state
        with self._lock:
            next_attempt = None
            if state == CircuitState.OPEN:
                remaining = max(self._next_attempt - self._clock(), 0.0)
                next_attempt = (
                    datetime.now(UTC) + timedelta(seconds=remaining)
                ).isoformat()
            return {
                "name": self.name,
                "state": state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "next_attempt_time": next_attempt,
                "last_error": self._last_error,
            }

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._next_attempt = self._clock() + self.reset_timeout
        self._failure_count = 0
        self._success_count = 0

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_error = None


_payment_circuit_breaker: CircuitBreaker | None = None


def get_payment_circuit_breaker() -> CircuitBreaker:
    """
    Get the process-wide circuit breaker for the payment processor.

    Returns:
        CircuitBreaker configured from settings
    """
    global _payment_circuit_breaker
    if _payment_circuit_breaker is None:
        from app.config.settings import settings
        from app.utils.exceptions import PaymentDeclinedError

        _payment_circuit_breaker = CircuitBreaker(
            name="payment-processor",
            failure_threshold=settings.circuit_breaker_failure_threshold,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            half_open_success_threshold=settings.circuit_breaker_half_open_success_threshold,
            fallback=None,
            ignored_exceptions=(PaymentDeclinedError,),
        )
    return _payment_circuit_breaker
