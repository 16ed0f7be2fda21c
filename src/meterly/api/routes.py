"""
REST endpoints for events, usage, billable metrics, taxes and plan overrides.

Every route is scoped to the tenant named in the tenant header.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from fastapi import APIRouter, Depends, Query, Response, status

from meterly.api.deps import get_tenant
from meterly.core.models import (
    AggregationResult,
    AppliedTax,
    BatchEventsCreate,
    BatchResult,
    BillableMetric,
    BillableMetricCreate,
    BillableMetricUpdate,
    EventCreate,
    EventPage,
    PlanOverride,
    PlanOverrideCreate,
    PlanOverridePage,
    PlanOverrideUpdate,
    Tax,
    TaxAssignment,
    TaxCreate,
    TaxLevel,
    TaxPage,
    TaxUpdate,
    UsageEvent,
)
from meterly.tenancy import TenantServices

# ==================== EVENTS ====================

events_router = APIRouter(prefix="/v1/events", tags=["events"])


@events_router.post("", response_model=UsageEvent, status_code=status.HTTP_201_CREATED)
async def ingest_event(
    payload: EventCreate,
    response: Response,
    tenant: TenantServices = Depends(get_tenant),
) -> UsageEvent:
    """Ingest one usage event. A replayed transaction id returns 200."""
    outcome = await tenant.ingestion.ingest(payload)
    if not outcome.created:
        response.status_code = status.HTTP_200_OK
    return outcome.event


@events_router.post("/batch", response_model=BatchResult)
async def ingest_batch(
    payload: BatchEventsCreate,
    tenant: TenantServices = Depends(get_tenant),
) -> BatchResult:
    return await tenant.ingestion.ingest_batch(payload.events)


@events_router.get("", response_model=EventPage)
async def list_events(
    subscription_id: str = Query(..., min_length=1),
    code: str | None = None,
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1),
    tenant: TenantServices = Depends(get_tenant),
) -> EventPage:
    return await tenant.ingestion.events_for_subscription(
        subscription_id, code, start, end, page=page, per_page=per_page
    )


@events_router.get("/{event_id}", response_model=UsageEvent)
async def get_event(
    event_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> UsageEvent:
    return await tenant.ingestion.get_event(event_id)


# ==================== USAGE ====================

usage_router = APIRouter(prefix="/v1/subscriptions", tags=["usage"])


@usage_router.get("/{subscription_id}/usage", response_model=AggregationResult)
async def get_usage(
    subscription_id: str,
    code: str = Query(..., min_length=1),
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    carry_forward: Decimal | None = None,
    tenant: TenantServices = Depends(get_tenant),
) -> AggregationResult:
    """Aggregated usage; the period defaults to the subscription's current one."""
    subscription = await tenant.subscriptions.get(subscription_id)
    return await tenant.aggregation.aggregate(
        subscription.id,
        code,
        start or subscription.current_period_start,
        end or subscription.current_period_end,
        carry_forward=carry_forward,
    )


# ==================== BILLABLE METRICS ====================

metrics_router = APIRouter(prefix="/v1/billable-metrics", tags=["billable-metrics"])


@metrics_router.post("", response_model=BillableMetric, status_code=status.HTTP_201_CREATED)
async def create_metric(
    payload: BillableMetricCreate,
    tenant: TenantServices = Depends(get_tenant),
) -> BillableMetric:
    return await tenant.metrics.create(payload)


@metrics_router.get("", response_model=list[BillableMetric])
async def list_metrics(tenant: TenantServices = Depends(get_tenant)) -> list[BillableMetric]:
    return await tenant.metrics.list_metrics()


@metrics_router.get("/{metric_id}", response_model=BillableMetric)
async def get_metric(
    metric_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> BillableMetric:
    return await tenant.metrics.get(metric_id)


@metrics_router.patch("/{metric_id}", response_model=BillableMetric)
async def update_metric(
    metric_id: str,
    payload: BillableMetricUpdate,
    tenant: TenantServices = Depends(get_tenant),
) -> BillableMetric:
    return await tenant.metrics.update(metric_id, payload)


@metrics_router.delete("/{metric_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_metric(
    metric_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> Response:
    await tenant.metrics.delete(metric_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== TAXES ====================

taxes_router = APIRouter(prefix="/v1/taxes", tags=["taxes"])


class AssignmentTarget(str, Enum):
    """URL segment naming what a tax is assigned to."""

    CUSTOMERS = "customers"
    PLANS = "plans"
    CHARGES = "charges"

    @property
    def level(self) -> TaxLevel:
        return {
            AssignmentTarget.CUSTOMERS: TaxLevel.CUSTOMER,
            AssignmentTarget.PLANS: TaxLevel.PLAN,
            AssignmentTarget.CHARGES: TaxLevel.CHARGE,
        }[self]


@taxes_router.post("", response_model=Tax, status_code=status.HTTP_201_CREATED)
async def create_tax(
    payload: TaxCreate,
    tenant: TenantServices = Depends(get_tenant),
) -> Tax:
    return await tenant.taxes.create(payload)


@taxes_router.get("", response_model=TaxPage)
async def list_taxes(
    applied_by_default: bool | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    tenant: TenantServices = Depends(get_tenant),
) -> TaxPage:
    return await tenant.taxes.list_taxes(applied_by_default, page=page, limit=limit)


@taxes_router.get("/resolve", response_model=list[AppliedTax])
async def resolve_taxes(
    customer_id: str = Query(..., min_length=1),
    plan_id: str | None = None,
    charge_id: str | None = None,
    tenant: TenantServices = Depends(get_tenant),
) -> list[AppliedTax]:
    return await tenant.taxes.resolve_taxes(customer_id, plan_id, charge_id)


@taxes_router.get("/{tax_id}", response_model=Tax)
async def get_tax(tax_id: str, tenant: TenantServices = Depends(get_tenant)) -> Tax:
    return await tenant.taxes.get(tax_id)


@taxes_router.patch("/{tax_id}", response_model=Tax)
async def update_tax(
    tax_id: str,
    payload: TaxUpdate,
    tenant: TenantServices = Depends(get_tenant),
) -> Tax:
    return await tenant.taxes.update(tax_id, payload)


@taxes_router.delete("/{tax_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tax(tax_id: str, tenant: TenantServices = Depends(get_tenant)) -> Response:
    await tenant.taxes.delete(tax_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@taxes_router.post(
    "/{tax_id}/{target}/{entity_id}",
    response_model=TaxAssignment,
    status_code=status.HTTP_201_CREATED,
)
async def assign_tax(
    tax_id: str,
    target: AssignmentTarget,
    entity_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> TaxAssignment:
    return await tenant.taxes.assign(target.level, entity_id, tax_id)


@taxes_router.delete("/{tax_id}/{target}/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unassign_tax(
    tax_id: str,
    target: AssignmentTarget,
    entity_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> Response:
    await tenant.taxes.unassign(target.level, entity_id, tax_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== PLAN OVERRIDES ====================

overrides_router = APIRouter(prefix="/v1/plan-overrides", tags=["plan-overrides"])


@overrides_router.post("", response_model=PlanOverride, status_code=status.HTTP_201_CREATED)
async def create_override(
    payload: PlanOverrideCreate,
    tenant: TenantServices = Depends(get_tenant),
) -> PlanOverride:
    return await tenant.overrides.create(payload)


@overrides_router.get("", response_model=PlanOverridePage)
async def list_overrides(
    customer_id: str | None = None,
    plan_id: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    tenant: TenantServices = Depends(get_tenant),
) -> PlanOverridePage:
    return await tenant.overrides.list_overrides(customer_id, plan_id, page=page, limit=limit)


@overrides_router.get("/{override_id}", response_model=PlanOverride)
async def get_override(
    override_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> PlanOverride:
    return await tenant.overrides.get(override_id)


@overrides_router.patch("/{override_id}", response_model=PlanOverride)
async def update_override(
    override_id: str,
    payload: PlanOverrideUpdate,
    tenant: TenantServices = Depends(get_tenant),
) -> PlanOverride:
    return await tenant.overrides.update(override_id, payload)


@overrides_router.delete("/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_override(
    override_id: str,
    tenant: TenantServices = Depends(get_tenant),
) -> Response:
    await tenant.overrides.delete(override_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


all_routers = [
    events_router,
    usage_router,
    metrics_router,
    taxes_router,
    overrides_router,
]
