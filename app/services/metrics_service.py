"""
Metrics recorder.

In-memory counters for job outcomes, queue events, errors and queue
health snapshots. Read by the health server and operator tooling.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from app.config.constants import (
    METRICS_MAX_ERROR_RECORDS,
    METRICS_MAX_HEALTH_RECORDS,
    METRICS_MAX_PROCESSING_SAMPLES,
)
from app.utils.datetime_utils import utc_now


@dataclass
class JobCounters:
    """Counters for one ``queue:kind`` key."""

    created: int = 0
    scheduled: int = 0
    started: int = 0
    success: int = 0
    failure: int = 0
    skipped: int = 0
    processing_ms: deque[float] = field(
        default_factory=lambda: deque(maxlen=METRICS_MAX_PROCESSING_SAMPLES)
    )

    @property
    def total(self) -> int:
        return self.success + self.failure

    def as_dict(self) -> dict[str, Any]:
        samples = list(self.processing_ms)
        return {
            "created": self.created,
            "scheduled": self.scheduled,
            "started": self.started,
            "success": self.success,
            "failure": self.failure,
            "skipped": self.skipped,
            "success_rate": (self.success / self.total * 100) if self.total else 0.0,
            "avg_processing_ms": round(sum(samples) / len(samples)) if samples else 0,
            "total_jobs": self.total,
        }


@dataclass
class ErrorRecord:
    """Deduplicated error occurrence."""

    source: str
    message: str
    critical: bool
    count: int = 1
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())


class MetricsRecorder:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobCounters] = {}
        self._queue_events: dict[str, dict[str, int]] = {}
        self._errors: dict[tuple[str, str], ErrorRecord] = {}
        self._health: deque[dict[str, Any]] = deque(maxlen=METRICS_MAX_HEALTH_RECORDS)

    @staticmethod
    def key(queue_name: str, kind: str) -> str:
        return f"{queue_name}:{kind}"

    def _counters(self, key: str) -> JobCounters:
        if key not in self._jobs:
            self._jobs[key] = JobCounters()
        return self._jobs[key]

    def record_job_created(self, key: str) -> None:
        with self._lock:
            self._counters(key).created += 1

    def record_job_scheduled(self, key: str) -> None:
        with self._lock:
            self._counters(key).scheduled += 1

    def record_job_started(self, key: str) -> None:
        with self._lock:
            self._counters(key).started += 1

    def record_job_skipped(self, key: str) -> None:
        with self._lock:
            self._counters(key).skipped += 1

    def record_job_success(self, key: str, processing_ms: float | None = None) -> None:
        with self._lock:
            counters = self._counters(key)
            counters.success += 1
            if processing_ms is not None:
                counters.processing_ms.append(processing_ms)

    def record_job_failure(self, key: str, message: str) -> None:
        with self._lock:
            self._counters(key).failure += 1
            self._record_error(key, message, critical=False)

    def record_queue_event(self, queue_name: str, event: str, count: int = 1) -> None:
        with self._lock:
            events = self._queue_events.setdefault(queue_name, {})
            events[event] = events.get(event, 0) + count

    def record_critical_error(self, source: str, message: str) -> None:
        """Record an error that needs operator action."""
        logger.critical(f"CRITICAL ERROR [{source}]: {message}")
        with self._lock:
            self._record_error(source, message, critical=True)

    def record_queue_health(self, health: dict[str, Any]) -> None:
        with self._lock:
            self._health.append({**health, "timestamp": utc_now().isoformat()})

    def _record_error(self, source: str, message: str, critical: bool) -> None:
        record = self._errors.get((source, message))
        if record is not None:
            record.count += 1
            record.timestamp = utc_now().isoformat()
            record.critical = record.critical or critical
            return
        if len(self._errors) >= METRICS_MAX_ERROR_RECORDS:
            oldest = min(self._errors, key=lambda k: self._errors[k].timestamp)
            del self._errors[oldest]
        self._errors[(source, message)] = ErrorRecord(source, message, critical)

    def job_metrics(self, key: str) -> dict[str, Any]:
        """Counters for one ``queue:kind`` key (zeros when unseen)."""
        with self._lock:
            counters = self._jobs.get(key)
            return (counters or JobCounters()).as_dict()

    def errors(self, limit: int = 10, critical_only: bool = False) -> list[dict[str, Any]]:
        """Most recent errors first."""
        with self._lock:
            records = [
                r for r in self._errors.values() if r.critical or not critical_only
            ]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return [
            {
                "source": r.source,
                "message": r.message,
                "critical": r.critical,
                "count": r.count,
                "timestamp": r.timestamp,
            }
            for r in records[:limit]
        ]

    def snapshot(self) -> dict[str, Any]:
        """Summary of every metric, for the /metrics endpoint."""
        with self._lock:
            jobs = {key: c.as_dict() for key, c in self._jobs.items()}
            queue_events = {q: dict(e) for q, e in self._queue_events.items()}
            health = self._health[-1] if self._health else {}

        total_success = sum(j["success"] for j in jobs.values())
        total_failure = sum(j["failure"] for j in jobs.values())
        total = total_success + total_failure
        return {
            "summary": {
                "total_jobs": total,
                "total_success": total_success,
                "total_failures": total_failure,
                "overall_success_rate": (total_success / total * 100) if total else 0.0,
                "job_types": len(jobs),
            },
            "jobs": jobs,
            "queue_events": queue_events,
            "recent_errors": self.errors(limit=5),
            "critical_errors": self.errors(limit=5, critical_only=True),
            "current_queue_health": health,
        }

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._queue_events.clear()
            self._errors.clear()
            self._health.clear()


_metrics_recorder: MetricsRecorder | None = None


def get_metrics_recorder() -> MetricsRecorder:
    """Get the process-wide metrics recorder."""
    global _metrics_recorder
    if _metrics_recorder is None:
        _metrics_recorder = MetricsRecorder()
    return _metrics_recorder
