"""
Metrics collection for meterly.

Counts ingested events, scheduling outcomes and job deliveries so the
/metrics endpoint can report on pipeline health.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from meterly.core.models import utcnow


@dataclass
class TenantMetrics:
    """Ingestion and scheduling counters for a single tenant."""

    events_created: int = 0
    events_duplicate: int = 0
    events_error: int = 0
    batches: int = 0
    schedules_enqueued: int = 0
    schedules_deduplicated: int = 0
    schedules_failed: int = 0

    @property
    def total_events(self) -> int:
        return self.events_created + self.events_duplicate + self.events_error


@dataclass
class JobMetrics:
    """Delivery counters for one job type."""

    delivered: int = 0
    failed: int = 0
    retried: int = 0
    dropped: int = 0
    total_latency_ms: float = 0.0
    errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.delivered == 0:
            return 0.0
        return self.total_latency_ms / self.delivered


class Metrics:
    """
    Thread-safe metrics collector.

    One instance is shared by every tenant's services in a process.
    """

    def __init__(self):
        self._lock = Lock()
        self._tenants: dict[str, TenantMetrics] = defaultdict(TenantMetrics)
        self._jobs: dict[str, JobMetrics] = defaultdict(JobMetrics)
        self._start_time = utcnow()

    def record_event(self, tenant_id: str, status: str) -> None:
        """
        Record the outcome of one ingested event.

        Args:
            tenant_id: Tenant the event belongs to
            status: One of created, duplicate, error
        """
        with self._lock:
            tm = self._tenants[tenant_id]
            if status == "created":
                tm.events_created += 1
            elif status == "duplicate":
                tm.events_duplicate += 1
            else:
                tm.events_error += 1

    def record_batch(self, tenant_id: str) -> None:
        with self._lock:
            self._tenants[tenant_id].batches += 1

    def record_schedule(self, tenant_id: str, outcome: str) -> None:
        """
        Record a progressive-billing scheduling attempt.

        Args:
            tenant_id: Tenant the subscription belongs to
            outcome: One of enqueued, deduplicated, failed
        """
        with self._lock:
            tm = self._tenants[tenant_id]
            if outcome == "enqueued":
                tm.schedules_enqueued += 1
            elif outcome == "deduplicated":
                tm.schedules_deduplicated += 1
            else:
                tm.schedules_failed += 1

    def record_job(
        self,
        job_type: str,
        success: bool,
        latency_ms: float = 0.0,
        error_type: str | None = None,
        retried: bool = False,
    ) -> None:
        """
        Record one job delivery.

        Args:
            job_type: Queue the job came from
            success: Whether the handler completed
            latency_ms: Handler run time
            error_type: Exception class name on failure
            retried: Whether a failed job was put back on the queue
        """
        with self._lock:
            jm = self._jobs[job_type]
            if success:
                jm.delivered += 1
                jm.total_latency_ms += latency_ms
                return
            jm.failed += 1
            jm.errors[error_type or "unknown"] += 1
            if retried:
                jm.retried += 1
            else:
                jm.dropped += 1

    def tenant(self, tenant_id: str) -> TenantMetrics:
        """Snapshot of one tenant's counters."""
        with self._lock:
            tm = self._tenants.get(tenant_id)
            return TenantMetrics(**tm.__dict__) if tm else TenantMetrics()

    def get_summary(self) -> dict[str, Any]:
        """
        Get metrics summary.

        Returns:
            Dictionary with aggregated metrics
        """
        with self._lock:
            uptime = (utcnow() - self._start_time).total_seconds()
            total_events = sum(tm.total_events for tm in self._tenants.values())

            return {
                "uptime_seconds": uptime,
                "total_events": total_events,
                "events_per_minute": total_events / (uptime / 60) if uptime > 0 else 0,
                "tenants": {
                    name: {
                        "events_created": tm.events_created,
                        "events_duplicate": tm.events_duplicate,
                        "events_error": tm.events_error,
                        "batches": tm.batches,
                        "schedules_enqueued": tm.schedules_enqueued,
                        "schedules_deduplicated": tm.schedules_deduplicated,
                        "schedules_failed": tm.schedules_failed,
                    }
                    for name, tm in self._tenants.items()
                },
                "jobs": {
                    name: {
                        "delivered": jm.delivered,
                        "failed": jm.failed,
                        "retried": jm.retried,
                        "dropped": jm.dropped,
                        "avg_latency_ms": jm.avg_latency_ms,
                        "errors": dict(jm.errors),
                    }
                    for name, jm in self._jobs.items()
                },
            }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._tenants.clear()
            self._jobs.clear()
            self._start_time = utcnow()


# Global metrics instance
metrics = Metrics()
