"""
Delayed job queue and worker.

Each job type uses four keys:

- `delayed`: sorted set of waiting members scored by the time they are due
- `jobs`: hash of waiting job bodies, keyed by member
- `active`: sorted set of leases scored by their expiry
- `leases`: hash of claimed job bodies, keyed by lease

Enqueueing writes the body and its due-time entry in one atomic step, and a
dedupe key makes a second enqueue return the waiting job instead of adding
one. Claiming moves a job from the waiting pair to the leased pair, which
releases the dedupe key. The lease is removed only after the handler has
finished, so a job whose worker dies or whose requeue fails comes back once
its lease expires. Delivery is at least once.
"""

from __future__ import annotations

import asyncio
import math
import time
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from meterly.storage.backend import StorageBackend
from meterly.utils.logging import JobDeliveryLogger
from meterly.utils.metrics import Metrics
from meterly.utils.retry import RetryConfig, calculate_delay

logger = structlog.get_logger()

DEFAULT_VISIBILITY_TIMEOUT = 300.0


class JobType(str, Enum):
    """Queues known to the worker."""

    CHECK_PROGRESSIVE_BILLING = "check-progressive-billing"
    GENERATE_INVOICE = "generate-invoice"


class Job(BaseModel):
    """A unit of deferred work."""

    job_type: JobType
    job_id: str
    tenant_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    run_at: float
    attempts: int = 0
    enqueued_at: float = Field(default_factory=time.time)
    last_error: str | None = None
    # Set on claim, never stored
    lease_id: str | None = Field(default=None, exclude=True)

    @property
    def member(self) -> str:
        return f"{self.tenant_id}:{self.job_id}"


JobHandler = Callable[[Job], Awaitable[None]]


class JobQueue:
    """Shared delayed queue, one set of keys per job type."""

    def __init__(
        self,
        storage: StorageBackend,
        prefix: str = "meterly:queue",
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
    ):
        self._storage = storage
        self._prefix = prefix
        self.visibility_timeout = visibility_timeout

    def _key(self, job_type: JobType, name: str) -> str:
        return f"{self._prefix}:{job_type.value}:{name}"

    async def enqueue(
        self,
        job_type: JobType,
        tenant_id: str,
        payload: dict[str, Any],
        delay_seconds: float = 0.0,
        dedupe_key: str | None = None,
        attempts: int = 0,
        last_error: str | None = None,
        now: float | None = None,
    ) -> tuple[Job, bool]:
        """
        Add a job to the queue.

        Args:
            job_type: Queue to add the job to
            tenant_id: Tenant the job runs for
            payload: Handler arguments
            delay_seconds: How long before the job becomes due
            dedupe_key: Job id; at most one job per key waits at a time
            attempts: Failed deliveries so far
            last_error: Error from the previous delivery, if any
            now: Current time, defaults to the wall clock

        Returns:
            Tuple of (job, created). When created is False the returned
            job is the one already waiting under the same key.
        """
        now = time.time() if now is None else now
        job = Job(
            job_type=job_type,
            job_id=dedupe_key or uuid4().hex,
            tenant_id=tenant_id,
            payload=payload,
            run_at=now + max(delay_seconds, 0.0),
            attempts=attempts,
            last_error=last_error,
        )

        jobs_key = self._key(job_type, "jobs")
        created = await self._storage.hsetnx_with_writes(
            jobs_key,
            job.member,
            job.model_dump_json(),
            zadd=[(self._key(job_type, "delayed"), job.member, job.run_at)],
        )
        if created:
            return job, True

        raw = await self._storage.hget(jobs_key, job.member)
        if raw is None:
            # Claimed between the two calls; the claimer will observe
            # everything written before this enqueue.
            return job, False
        return Job.model_validate_json(raw), False

    async def get(self, job_type: JobType, tenant_id: str, job_id: str) -> Job | None:
        """Waiting job under a tenant's job id, if any."""
        raw = await self._storage.hget(self._key(job_type, "jobs"), f"{tenant_id}:{job_id}")
        return Job.model_validate_json(raw) if raw is not None else None

    async def pending(self, job_type: JobType) -> int:
        return await self._storage.zcount(self._key(job_type, "delayed"))

    async def in_flight(self, job_type: JobType) -> int:
        return await self._storage.zcount(self._key(job_type, "active"))

    async def due(self, job_type: JobType, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return await self._storage.zcount(self._key(job_type, "delayed"), -math.inf, now)

    async def claim_due(
        self,
        job_type: JobType,
        now: float | None = None,
        limit: int = 50,
    ) -> list[Job]:
        """
        Take a lease on up to `limit` due jobs.

        Jobs whose lease has expired are put back first. Every returned job
        must be passed to `ack` or `retry` before its lease expires.
        """
        now = time.time() if now is None else now
        await self.recover_expired(job_type, now)

        members = await self._storage.zrange_by_score(
            self._key(job_type, "delayed"), -math.inf, now, count=limit
        )
        claimed: list[Job] = []
        for member in members:
            lease_id = uuid4().hex
            raw = await self._storage.move_entry(
                self._key(job_type, "delayed"),
                self._key(job_type, "jobs"),
                member,
                self._key(job_type, "active"),
                self._key(job_type, "leases"),
                lease_id,
                now + self.visibility_timeout,
            )
            if raw is None:
                continue
            job = Job.model_validate_json(raw)
            job.lease_id = lease_id
            claimed.append(job)
        return claimed

    async def ack(self, job: Job) -> None:
        """Release a claimed job for good."""
        if job.lease_id is None:
            return
        await self._storage.zrem(self._key(job.job_type, "active"), job.lease_id)
        await self._storage.hdel(self._key(job.job_type, "leases"), job.lease_id)

    async def retry(
        self,
        job: Job,
        error: Exception,
        delay_seconds: float,
        now: float | None = None,
    ) -> Job:
        """
        Put a claimed job back for another attempt, then release its lease.

        If a job with the same id is already waiting, the retry folds into
        it. When the enqueue fails the lease stays in place and the job is
        recovered once it expires.
        """
        retried, _ = await self.enqueue(
            job.job_type,
            job.tenant_id,
            job.payload,
            delay_seconds=delay_seconds,
            dedupe_key=job.job_id,
            attempts=job.attempts + 1,
            last_error=str(error),
            now=now,
        )
        await self.ack(job)
        return retried

    async def recover_expired(self, job_type: JobType, now: float | None = None) -> int:
        """Return jobs with an expired lease to the waiting set. Returns the number moved."""
        now = time.time() if now is None else now
        active_key = self._key(job_type, "active")
        leases_key = self._key(job_type, "leases")

        recovered = 0
        for lease_id in await self._storage.zrange_by_score(active_key, -math.inf, now):
            raw = await self._storage.hget(leases_key, lease_id)
            if raw is None:
                await self._storage.zrem(active_key, lease_id)
                continue
            job = Job.model_validate_json(raw)
            moved = await self._storage.move_entry(
                active_key,
                leases_key,
                lease_id,
                self._key(job_type, "delayed"),
                self._key(job_type, "jobs"),
                job.member,
                now,
            )
            if moved is not None:
                recovered += 1
                logger.warning(
                    "Job lease expired, requeued",
                    job_type=job_type.value,
                    job_id=job.job_id,
                    tenant_id=job.tenant_id,
                )
        return recovered


class JobWorker:
    """
    Polls the queue and hands due jobs to their handlers.

    A failing handler puts its job back with exponential backoff until
    `retry.max_attempts` is reached, after which the job is dropped and
    logged. A job whose bookkeeping fails keeps its lease and is delivered
    again after the lease expires; the rest of the sweep carries on.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[JobType, JobHandler],
        retry: RetryConfig | None = None,
        poll_interval: float = 1.0,
        batch_size: int = 50,
        metrics: Metrics | None = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.retry = retry or RetryConfig()
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.metrics = metrics

    async def run_once(self, now: float | None = None) -> int:
        """Deliver every job due at `now`. Returns the number of jobs run."""
        delivered = 0
        for job_type, handler in self.handlers.items():
            jobs = await self.queue.claim_due(job_type, now=now, limit=self.batch_size)
            for job in jobs:
                try:
                    await self._deliver(job, handler, now)
                except Exception as e:
                    logger.error(
                        "Job left leased after failed bookkeeping",
                        job_type=job.job_type.value,
                        job_id=job.job_id,
                        tenant_id=job.tenant_id,
                        error=str(e),
                    )
                    continue
                delivered += 1
        return delivered

    async def _deliver(self, job: Job, handler: JobHandler, now: float | None) -> None:
        delivery = JobDeliveryLogger(
            logger,
            job.job_type.value,
            job.job_id,
            job.tenant_id,
            attempt=job.attempts + 1,
        )
        try:
            with delivery:
                await handler(job)
        except Exception as e:
            await self._handle_failure(job, e, now)
            return

        await self.queue.ack(job)
        if self.metrics:
            self.metrics.record_job(
                job.job_type.value,
                success=True,
                latency_ms=delivery.elapsed_ms,
            )

    async def _handle_failure(self, job: Job, error: Exception, now: float | None) -> None:
        attempts = job.attempts + 1
        retried = self.retry.should_retry(attempts)

        if retried:
            delay = calculate_delay(attempts - 1, self.retry)
            await self.queue.retry(job, error, delay, now=now)
            logger.warning(
                "Job requeued",
                job_type=job.job_type.value,
                job_id=job.job_id,
                attempts=attempts,
                delay=delay,
            )
        else:
            await self.queue.ack(job)
            logger.error(
                "Job dropped after max attempts",
                job_type=job.job_type.value,
                job_id=job.job_id,
                tenant_id=job.tenant_id,
                attempts=attempts,
                error=str(error),
            )

        if self.metrics:
            self.metrics.record_job(
                job.job_type.value,
                success=False,
                error_type=type(error).__name__,
                retried=retried,
            )

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Poll until `stop` is set."""
        logger.info("Job worker started", job_types=[t.value for t in self.handlers])
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Job worker poll failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Job worker stopped")
