"""
Usage event ingestion.

Accepts single events and batches, writes them to the ledger exactly once per
transaction id, and asks the progressive billing scheduler to look at every
active subscription that received new usage.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

import structlog

from meterly.catalog.metrics import MetricCatalog
from meterly.catalog.subscriptions import SubscriptionDirectory
from meterly.core.config import IngestionSettings
from meterly.core.errors import BadRequestError, BillingError, NotFoundError
from meterly.core.models import (
    BatchItemResult,
    BatchResult,
    EventCreate,
    EventPage,
    EventStatus,
    PageMeta,
    Subscription,
    UsageEvent,
    new_id,
    utcnow,
)
from meterly.metering.ledger import EventLedger
from meterly.scheduling.progressive import (
    ProgressiveBillingScheduler,
    Scheduled,
    ScheduleOutcome,
)
from meterly.utils.metrics import Metrics

logger = structlog.get_logger()


@dataclass(frozen=True)
class IngestOutcome:
    """Stored event and whether this call created it."""

    event: UsageEvent
    created: bool
    subscription: Subscription | None = None
    # A replay that restored index entries lost by an earlier failed insert
    repaired: bool = False

    @property
    def needs_check(self) -> bool:
        return (
            (self.created or self.repaired)
            and self.subscription is not None
            and self.subscription.is_active
        )


class EventIngestionService:
    """Write path into a tenant's event ledger."""

    def __init__(
        self,
        tenant_id: str,
        ledger: EventLedger,
        metrics_catalog: MetricCatalog,
        subscriptions: SubscriptionDirectory,
        scheduler: ProgressiveBillingScheduler,
        settings: IngestionSettings | None = None,
        metrics: Metrics | None = None,
    ):
        self.tenant_id = tenant_id
        self.ledger = ledger
        self.metrics_catalog = metrics_catalog
        self.subscriptions = subscriptions
        self.scheduler = scheduler
        self.settings = settings or IngestionSettings()
        self.metrics = metrics

    async def _store(self, data: EventCreate) -> IngestOutcome:
        existing = await self.ledger.get_by_transaction_id(data.transaction_id)
        if existing is not None:
            if not await self.ledger.reindex(existing):
                return IngestOutcome(event=existing, created=False)
            logger.warning(
                "Restored indexes of a partially stored event",
                tenant_id=self.tenant_id,
                transaction_id=existing.transaction_id,
            )
            return IngestOutcome(
                event=existing,
                created=False,
                subscription=await self.subscriptions.find(existing.subscription_id),
                repaired=True,
            )

        subscription = await self.subscriptions.get(data.subscription_id)
        await self.metrics_catalog.get_by_code(data.code)

        event = UsageEvent(
            id=new_id("evt"),
            transaction_id=data.transaction_id,
            subscription_id=subscription.id,
            code=data.code,
            timestamp=data.timestamp or utcnow(),
            properties=data.properties or {},
        )
        stored, created = await self.ledger.insert(event)
        return IngestOutcome(event=stored, created=created, subscription=subscription)

    async def _schedule(self, subscription_id: str) -> ScheduleOutcome:
        outcome = await self.scheduler.schedule(self.tenant_id, subscription_id)
        if isinstance(outcome, Scheduled):
            logger.debug(
                "Progressive billing check scheduled",
                tenant_id=self.tenant_id,
                subscription_id=subscription_id,
                job_id=outcome.job_id,
                deduplicated=outcome.deduplicated,
            )
        else:
            logger.warning(
                "Progressive billing check not scheduled",
                tenant_id=self.tenant_id,
                subscription_id=subscription_id,
                reason=outcome.reason,
            )
        return outcome

    def _record(self, status: EventStatus) -> None:
        if self.metrics:
            self.metrics.record_event(self.tenant_id, status.value)

    async def ingest(self, data: EventCreate) -> IngestOutcome:
        """
        Ingest one event.

        A replayed transaction id returns the stored event with
        created=False. Its only other effect is restoring index entries
        that an earlier failed attempt left out.

        Raises:
            NotFoundError: Unknown subscription or metric code
        """
        outcome = await self._store(data)
        self._record(EventStatus.CREATED if outcome.created else EventStatus.DUPLICATE)

        if outcome.needs_check:
            await self._schedule(outcome.subscription.id)

        logger.info(
            "Event ingested",
            tenant_id=self.tenant_id,
            transaction_id=data.transaction_id,
            event_id=outcome.event.id,
            created=outcome.created,
        )
        return outcome

    async def ingest_batch(self, events: list[EventCreate]) -> BatchResult:
        """
        Ingest up to `max_batch_size` events, each independently.

        Per-item failures are reported in the result rather than raised.
        Each affected active subscription is scheduled once, after the
        whole batch has been written.

        Raises:
            BadRequestError: Empty or oversized batch
        """
        if not events:
            raise BadRequestError("Batch must contain at least one event")
        if len(events) > self.settings.max_batch_size:
            raise BadRequestError(
                f"Batch cannot exceed {self.settings.max_batch_size} events"
            )

        results: list[BatchItemResult] = []
        to_schedule: dict[str, None] = {}

        for data in events:
            try:
                outcome = await self._store(data)
            except BillingError as e:
                results.append(BatchItemResult(
                    transaction_id=data.transaction_id,
                    status=EventStatus.ERROR,
                    error=e.message,
                ))
                continue
            except Exception as e:
                logger.error(
                    "Batch item failed",
                    tenant_id=self.tenant_id,
                    transaction_id=data.transaction_id,
                    error=str(e),
                )
                results.append(BatchItemResult(
                    transaction_id=data.transaction_id,
                    status=EventStatus.ERROR,
                    error=str(e) or type(e).__name__,
                ))
                continue

            status = EventStatus.CREATED if outcome.created else EventStatus.DUPLICATE
            results.append(BatchItemResult(
                transaction_id=data.transaction_id,
                status=status,
                event_id=outcome.event.id,
            ))
            if outcome.needs_check:
                to_schedule[outcome.subscription.id] = None

        for subscription_id in to_schedule:
            await self._schedule(subscription_id)

        for item in results:
            self._record(item.status)
        if self.metrics:
            self.metrics.record_batch(self.tenant_id)

        created = sum(1 for r in results if r.status is EventStatus.CREATED)
        duplicates = sum(1 for r in results if r.status is EventStatus.DUPLICATE)
        errors = len(results) - created - duplicates

        logger.info(
            "Batch ingested",
            tenant_id=self.tenant_id,
            total=len(results),
            created=created,
            duplicates=duplicates,
            errors=errors,
            scheduled=len(to_schedule),
        )
        return BatchResult(
            total=len(results),
            created=created,
            duplicates=duplicates,
            errors=errors,
            results=results,
        )

    async def get_event(self, event_id: str) -> UsageEvent:
        event = await self.ledger.get(event_id)
        if event is None:
            raise NotFoundError("Event not found")
        return event

    async def events_for_subscription(
        self,
        subscription_id: str,
        code: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> EventPage:
        """
        Page through a subscription's events, newest first.

        `start` and `end` are both inclusive. The subscription may be given
        by id or external id.
        """
        per_page = per_page or self.settings.default_per_page
        if page < 1 or per_page < 1 or per_page > self.settings.max_per_page:
            raise BadRequestError(
                f"page must be >= 1 and per_page between 1 and {self.settings.max_per_page}"
            )

        subscription = await self.subscriptions.find(subscription_id)
        resolved_id = subscription.id if subscription else subscription_id

        total = await self.ledger.count(resolved_id, code, start, end)
        data = await self.ledger.page(
            resolved_id,
            code,
            start,
            end,
            offset=(page - 1) * per_page,
            limit=per_page,
        )
        return EventPage(
            data=data,
            meta=PageMeta(
                total=total,
                page=page,
                per_page=per_page,
                total_pages=math.ceil(total / per_page),
            ),
        )
