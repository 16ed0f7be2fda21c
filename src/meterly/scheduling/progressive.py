"""
Progressive billing scheduler.

Every accepted usage event asks for a threshold check on its subscription.
Requests are debounced: the first one enqueues a check due after the delay,
and further requests for the same subscription are absorbed by that pending
check until a worker claims it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import structlog

from meterly.scheduling.queue import Job, JobHandler, JobQueue, JobType
from meterly.utils.metrics import Metrics

logger = structlog.get_logger()

DEFAULT_DELAY_SECONDS = 60.0


def progressive_job_id(subscription_id: str) -> str:
    return f"progressive-{subscription_id}"


@dataclass(frozen=True)
class Scheduled:
    """A check is pending for the subscription."""

    job_id: str
    deduplicated: bool = False


@dataclass(frozen=True)
class SchedulingFailed:
    """The queue could not be reached; the event itself is unaffected."""

    reason: str


ScheduleOutcome = Scheduled | SchedulingFailed


class ProgressiveBillingScheduler:
    """Debounced, deduplicated producer of progressive-billing checks."""

    def __init__(
        self,
        queue: JobQueue,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        metrics: Metrics | None = None,
    ):
        self.queue = queue
        self.delay_seconds = delay_seconds
        self.metrics = metrics

    async def schedule(
        self,
        tenant_id: str,
        subscription_id: str,
        now: float | None = None,
    ) -> ScheduleOutcome:
        """
        Request a progressive-billing check for a subscription.

        Never raises. Queue failures come back as SchedulingFailed so that
        event ingestion can report success regardless.
        """
        try:
            job, created = await self.queue.enqueue(
                JobType.CHECK_PROGRESSIVE_BILLING,
                tenant_id,
                {"subscription_id": subscription_id},
                delay_seconds=self.delay_seconds,
                dedupe_key=progressive_job_id(subscription_id),
                now=now,
            )
        except Exception as e:
            logger.warning(
                "Failed to schedule progressive billing check",
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                error=str(e),
            )
            if self.metrics:
                self.metrics.record_schedule(tenant_id, "failed")
            return SchedulingFailed(reason=str(e) or type(e).__name__)

        if self.metrics:
            self.metrics.record_schedule(tenant_id, "enqueued" if created else "deduplicated")
        return Scheduled(job_id=job.job_id, deduplicated=not created)


class ProgressiveBillingChecker(Protocol):
    """Consumer side of the check-progressive-billing queue."""

    async def check(self, tenant_id: str, subscription_id: str) -> None:
        ...


def progressive_billing_handler(checker: ProgressiveBillingChecker) -> JobHandler:
    """Adapt a checker to the worker's job handler signature."""

    async def handle(job: Job) -> None:
        await checker.check(job.tenant_id, job.payload["subscription_id"])

    return handle
