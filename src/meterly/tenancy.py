"""
Per-tenant service wiring.

All tenants share one storage backend and one job queue; each tenant's data
lives under its own key namespace. Services are built on first use and
cached for the life of the registry.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from meterly.catalog.metrics import MetricCatalog
from meterly.catalog.plans import PlanCatalog
from meterly.catalog.subscriptions import SubscriptionDirectory
from meterly.core.config import Settings, get_settings
from meterly.core.currencies import CurrencyTable, build_currency_table
from meterly.core.errors import BadRequestError
from meterly.metering.aggregation import AggregationEngine
from meterly.metering.ingestion import EventIngestionService
from meterly.metering.ledger import EventLedger
from meterly.rating.overrides import PlanOverrideService
from meterly.rating.taxes import TaxService
from meterly.scheduling.evaluator import ProgressiveBillingEvaluator
from meterly.scheduling.progressive import (
    ProgressiveBillingScheduler,
    progressive_billing_handler,
)
from meterly.scheduling.queue import JobQueue, JobType, JobWorker
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace
from meterly.utils.metrics import Metrics
from meterly.utils.retry import RetryConfig

logger = structlog.get_logger()

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass
class TenantServices:
    """Every service for a single tenant."""

    tenant_id: str
    metrics: MetricCatalog
    plans: PlanCatalog
    subscriptions: SubscriptionDirectory
    ledger: EventLedger
    ingestion: EventIngestionService
    aggregation: AggregationEngine
    taxes: TaxService
    overrides: PlanOverrideService
    evaluator: ProgressiveBillingEvaluator


class TenantRegistry:
    """Builds and caches TenantServices keyed by tenant id."""

    def __init__(
        self,
        storage: StorageBackend,
        settings: Settings | None = None,
        currencies: CurrencyTable | None = None,
        metrics: Metrics | None = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.currencies = currencies if currencies is not None else build_currency_table(
            allowed=self.settings.meterly.supported_currencies or None
        )
        self.metrics = metrics
        self.queue = JobQueue(
            storage, visibility_timeout=self.settings.scheduler.visibility_timeout_seconds
        )
        self.scheduler = ProgressiveBillingScheduler(
            self.queue,
            delay_seconds=self.settings.scheduler.progressive_delay_seconds,
            metrics=metrics,
        )
        self._tenants: dict[str, TenantServices] = {}

    def get(self, tenant_id: str) -> TenantServices:
        """
        Services for a tenant.

        Raises:
            BadRequestError: malformed tenant id
        """
        services = self._tenants.get(tenant_id)
        if services is None:
            if not TENANT_ID_PATTERN.match(tenant_id or ""):
                raise BadRequestError(f"Invalid tenant id '{tenant_id}'")
            services = self._build(tenant_id)
            self._tenants[tenant_id] = services
            logger.debug("Tenant services created", tenant_id=tenant_id)
        return services

    def _build(self, tenant_id: str) -> TenantServices:
        ns = TenantNamespace(tenant_id)
        plans = PlanCatalog(self.storage, ns)
        metrics = MetricCatalog(self.storage, ns, plans=plans)
        subscriptions = SubscriptionDirectory(self.storage, ns)
        ledger = EventLedger(self.storage, ns)
        aggregation = AggregationEngine(ledger, metrics, subscriptions)
        overrides = PlanOverrideService(self.storage, ns, self.currencies, plans=plans)

        return TenantServices(
            tenant_id=tenant_id,
            metrics=metrics,
            plans=plans,
            subscriptions=subscriptions,
            ledger=ledger,
            ingestion=EventIngestionService(
                tenant_id,
                ledger,
                metrics,
                subscriptions,
                self.scheduler,
                settings=self.settings.ingestion,
                metrics=self.metrics,
            ),
            aggregation=aggregation,
            taxes=TaxService(self.storage, ns),
            overrides=overrides,
            evaluator=ProgressiveBillingEvaluator(
                tenant_id,
                subscriptions,
                plans,
                metrics,
                aggregation,
                overrides,
                self.queue,
            ),
        )

    async def check(self, tenant_id: str, subscription_id: str) -> None:
        """Run a progressive billing check for a tenant's subscription."""
        await self.get(tenant_id).evaluator.evaluate(subscription_id)

    def build_worker(self) -> JobWorker:
        """Job worker that consumes progressive billing checks."""
        scheduler_settings = self.settings.scheduler
        return JobWorker(
            self.queue,
            {JobType.CHECK_PROGRESSIVE_BILLING: progressive_billing_handler(self)},
            retry=RetryConfig(
                max_attempts=scheduler_settings.max_attempts,
                base_delay=scheduler_settings.retry_base_delay,
                max_delay=scheduler_settings.retry_max_delay,
            ),
            poll_interval=scheduler_settings.poll_interval_seconds,
            batch_size=scheduler_settings.claim_batch_size,
            metrics=self.metrics,
        )
