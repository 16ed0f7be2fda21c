"""
Aggregation engine.

Reduces the ledger events of one subscription and metric over a billing
period to a single Decimal, according to the metric's aggregation type.
Read-only: nothing here writes to the ledger.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

import structlog

from meterly.catalog.metrics import MetricCatalog
from meterly.catalog.subscriptions import SubscriptionDirectory
from meterly.core.errors import BadRequestError
from meterly.core.models import (
    ZERO,
    AggregationResult,
    AggregationType,
    BillableMetric,
    UsageEvent,
    ensure_utc,
    to_decimal,
)
from meterly.metering.ledger import EventLedger

logger = structlog.get_logger()


def _field(event: UsageEvent, field_name: str | None) -> Any:
    return event.properties.get(field_name) if field_name else None


def _count(events, field_name, start, end) -> Decimal:
    return Decimal(len(events))


def _sum(events, field_name, start, end) -> Decimal:
    return sum((to_decimal(_field(e, field_name)) for e in events), ZERO)


def _max(events, field_name, start, end) -> Decimal:
    return max((to_decimal(_field(e, field_name)) for e in events), default=ZERO)


def _unique_count(events, field_name, start, end) -> Decimal:
    """
    Distinct values of the field, compared as strings.

    Events without the field are not counted: they do not add an
    empty-string value, so a metric with no field data reports 0 rather
    than 1.
    """
    values = {
        str(value)
        for value in (_field(e, field_name) for e in events)
        if value is not None
    }
    return Decimal(len(values))


def _latest(events, field_name, start, end) -> Decimal:
    # Events arrive sorted by (timestamp, created_at)
    if not events:
        return ZERO
    return to_decimal(_field(events[-1], field_name))


def _weighted_sum(events, field_name, start, end) -> Decimal:
    period = Decimal(str((end - start).total_seconds()))
    total = ZERO
    for event in events:
        since = max(event.timestamp, start)
        remaining = Decimal(str((end - since).total_seconds()))
        total += to_decimal(_field(event, field_name)) * remaining / period
    return total


Reducer = Callable[[list[UsageEvent], "str | None", datetime, datetime], Decimal]

REDUCERS: dict[AggregationType, Reducer] = {
    AggregationType.COUNT: _count,
    AggregationType.SUM: _sum,
    AggregationType.MAX: _max,
    AggregationType.UNIQUE_COUNT: _unique_count,
    AggregationType.LATEST: _latest,
    AggregationType.WEIGHTED_SUM: _weighted_sum,
}


def reduce_events(
    metric: BillableMetric,
    events: list[UsageEvent],
    period_start: datetime,
    period_end: datetime,
) -> Decimal:
    """
    Apply the metric's reduction to events already inside the period.

    Events must be ordered oldest first. Filters are not applied here.
    """
    reducer = REDUCERS[metric.aggregation_type]
    return reducer(events, metric.field_name, period_start, period_end)


class AggregationEngine:
    """Computes usage values for one tenant."""

    def __init__(
        self,
        ledger: EventLedger,
        metrics_catalog: MetricCatalog,
        subscriptions: SubscriptionDirectory | None = None,
    ):
        self.ledger = ledger
        self.metrics_catalog = metrics_catalog
        self.subscriptions = subscriptions

    async def aggregate(
        self,
        subscription_id: str,
        code: str,
        period_start: datetime,
        period_end: datetime,
        carry_forward: Decimal | None = None,
    ) -> AggregationResult:
        """
        Aggregate a metric over [period_start, period_end).

        Args:
            subscription_id: Subscription id or external id
            code: Billable metric code
            period_start: Inclusive start of the billing period
            period_end: Exclusive end of the billing period
            carry_forward: Previous period's value, used by recurring metrics

        Raises:
            NotFoundError: Unknown metric code
            BadRequestError: Empty or inverted period
        """
        metric = await self.metrics_catalog.get_by_code(code)

        if self.subscriptions is not None:
            subscription = await self.subscriptions.find(subscription_id)
            if subscription is not None:
                subscription_id = subscription.id

        return await self.aggregate_metric(
            metric, subscription_id, period_start, period_end, carry_forward
        )

    async def aggregate_metric(
        self,
        metric: BillableMetric,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        carry_forward: Decimal | None = None,
    ) -> AggregationResult:
        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)
        if period_end <= period_start:
            raise BadRequestError("period_end must be after period_start")

        events = await self.ledger.scan(subscription_id, metric.code, period_start, period_end)
        matching = [e for e in events if metric.matches(e.properties)]

        value = reduce_events(metric, matching, period_start, period_end)
        carried = carry_forward if metric.recurring and carry_forward else ZERO

        logger.debug(
            "Metric aggregated",
            subscription_id=subscription_id,
            code=metric.code,
            events=len(matching),
            value=str(value),
        )
        return AggregationResult(
            subscription_id=subscription_id,
            code=metric.code,
            aggregation_type=metric.aggregation_type,
            period_start=period_start,
            period_end=period_end,
            value=value + carried,
            event_count=len(matching),
            carried_forward=carried,
        )
