"""
Scheduling: the delayed job queue and progressive billing.
"""

from meterly.scheduling.evaluator import ProgressiveBillingEvaluator
from meterly.scheduling.progressive import (
    ProgressiveBillingScheduler,
    Scheduled,
    ScheduleOutcome,
    SchedulingFailed,
    progressive_billing_handler,
)
from meterly.scheduling.queue import Job, JobQueue, JobType, JobWorker

__all__ = [
    "Job",
    "JobQueue",
    "JobType",
    "JobWorker",
    "ProgressiveBillingEvaluator",
    "ProgressiveBillingScheduler",
    "Scheduled",
    "ScheduleOutcome",
    "SchedulingFailed",
    "progressive_billing_handler",
]
