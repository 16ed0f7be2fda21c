"""
Progressive billing evaluator.

Consumes check-progressive-billing jobs for one tenant. Usage accumulated
since the last progressive invoice (or the start of the period) is priced
with the plan's charges and the customer's overrides; once the cost reaches
the plan's threshold an invoice is requested from the invoicing service
and the subscription is stamped.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog

from meterly.catalog.metrics import MetricCatalog
from meterly.catalog.plans import PlanCatalog
from meterly.catalog.subscriptions import SubscriptionDirectory
from meterly.core.errors import NotFoundError
from meterly.core.models import ZERO, Subscription, ensure_utc, utcnow
from meterly.metering.aggregation import AggregationEngine
from meterly.rating.charges import charge_cost
from meterly.rating.overrides import PlanOverrideService
from meterly.scheduling.queue import JobQueue, JobType

logger = structlog.get_logger()


def invoice_job_id(subscription_id: str, since: datetime) -> str:
    """One progressive invoice per subscription and billing window start."""
    return f"invoice-{subscription_id}-{int(since.timestamp())}"


@dataclass(frozen=True)
class EvaluationResult:
    """What a progressive billing check decided."""

    subscription_id: str
    triggered: bool
    usage_cost: Decimal = ZERO
    threshold: Decimal | None = None
    skipped_reason: str | None = None
    invoice_job_id: str | None = None


class ProgressiveBillingEvaluator:
    """Decides whether a subscription has crossed its progressive billing threshold."""

    def __init__(
        self,
        tenant_id: str,
        subscriptions: SubscriptionDirectory,
        plans: PlanCatalog,
        metrics_catalog: MetricCatalog,
        aggregation: AggregationEngine,
        overrides: PlanOverrideService,
        queue: JobQueue,
    ):
        self.tenant_id = tenant_id
        self.subscriptions = subscriptions
        self.plans = plans
        self.metrics_catalog = metrics_catalog
        self.aggregation = aggregation
        self.overrides = overrides
        self.queue = queue

    def _skip(self, subscription_id: str, reason: str) -> EvaluationResult:
        logger.debug(
            "Progressive billing check skipped",
            tenant_id=self.tenant_id,
            subscription_id=subscription_id,
            reason=reason,
        )
        return EvaluationResult(
            subscription_id=subscription_id, triggered=False, skipped_reason=reason
        )

    async def usage_cost(
        self,
        subscription: Subscription,
        plan_id: str,
        since: datetime,
        until: datetime,
    ) -> Decimal:
        """Price every usage charge of the plan over [since, until)."""
        plan = await self.plans.get(plan_id)
        total = ZERO
        for charge in plan.charges:
            try:
                metric = await self.metrics_catalog.get(charge.billable_metric_id)
            except NotFoundError:
                logger.warning(
                    "Charge references missing billable metric",
                    tenant_id=self.tenant_id,
                    charge_id=charge.id,
                    metric_id=charge.billable_metric_id,
                )
                continue

            result = await self.aggregation.aggregate_metric(
                metric, subscription.id, since, until
            )
            if result.value <= 0:
                continue

            override = await self.overrides.resolve_charge_properties(
                subscription.customer_id, plan.id, charge.id
            )
            total += charge_cost(charge, result.value, override)
        return total

    async def evaluate(
        self, subscription_id: str, now: datetime | None = None
    ) -> EvaluationResult:
        now = ensure_utc(now) if now is not None else utcnow()

        subscription = await self.subscriptions.find(subscription_id)
        if subscription is None:
            return self._skip(subscription_id, "subscription_not_found")
        if not subscription.is_active:
            return self._skip(subscription.id, "subscription_not_active")

        try:
            plan = await self.plans.get(subscription.plan_id)
        except NotFoundError:
            return self._skip(subscription.id, "plan_not_found")

        threshold = plan.progressive_billing_threshold
        if threshold is None or threshold <= 0:
            return self._skip(subscription.id, "no_threshold")

        since = subscription.last_progressive_billing_at or subscription.current_period_start
        if now <= since:
            return self._skip(subscription.id, "empty_window")

        cost = await self.usage_cost(subscription, plan.id, since, now)
        if cost < threshold:
            logger.debug(
                "Progressive billing threshold not reached",
                tenant_id=self.tenant_id,
                subscription_id=subscription.id,
                usage_cost=str(cost),
                threshold=str(threshold),
            )
            return EvaluationResult(
                subscription_id=subscription.id,
                triggered=False,
                usage_cost=cost,
                threshold=threshold,
            )

        # Request the invoice before moving the window forward. If either
        # write fails the check is retried over the same window, and the key
        # keeps that retry from requesting a second invoice.
        job, created = await self.queue.enqueue(
            JobType.GENERATE_INVOICE,
            self.tenant_id,
            {
                "subscription_id": subscription.id,
                "customer_id": subscription.customer_id,
                "progressive": True,
                "usage_cost": str(cost),
                "period_start": since.isoformat(),
                "period_end": now.isoformat(),
            },
            dedupe_key=invoice_job_id(subscription.id, since),
        )
        await self.subscriptions.save(
            subscription.model_copy(update={"last_progressive_billing_at": now})
        )

        logger.info(
            "Progressive billing triggered",
            tenant_id=self.tenant_id,
            subscription_id=subscription.id,
            usage_cost=str(cost),
            threshold=str(threshold),
            invoice_job_id=job.job_id,
            deduplicated=not created,
        )
        return EvaluationResult(
            subscription_id=subscription.id,
            triggered=True,
            usage_cost=cost,
            threshold=threshold,
            invoice_job_id=job.job_id,
        )
