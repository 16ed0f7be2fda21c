"""
Core data models for the meterly billing core.

Defines metrics, usage events, taxes, plan overrides and the read-only
subscription and plan shapes consumed from the catalog layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Numeric value of a property, or zero when missing or not a number."""
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    return number if number.is_finite() else ZERO


class AggregationType(str, Enum):
    """Reduction applied to matching usage events."""

    COUNT = "COUNT"
    SUM = "SUM"
    MAX = "MAX"
    UNIQUE_COUNT = "UNIQUE_COUNT"
    LATEST = "LATEST"
    WEIGHTED_SUM = "WEIGHTED_SUM"

    @property
    def requires_field(self) -> bool:
        """Whether this aggregation reads a property value."""
        return self is not AggregationType.COUNT


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    TERMINATED = "TERMINATED"


class ChargeModel(str, Enum):
    """Pricing model of a plan charge."""

    STANDARD = "STANDARD"
    GRADUATED = "GRADUATED"
    VOLUME = "VOLUME"
    PACKAGE = "PACKAGE"
    PERCENTAGE = "PERCENTAGE"


class EventStatus(str, Enum):
    """Per-item outcome of batch ingestion."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    ERROR = "error"


class TaxLevel(str, Enum):
    """Entity kinds a tax can be assigned to."""

    CUSTOMER = "customer"
    PLAN = "plan"
    CHARGE = "charge"


# ==================== BILLABLE METRICS ====================


class MetricFilter(BaseModel):
    """Restricts a metric to events whose property takes an allowed value."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1)
    values: list[str] = Field(..., min_length=1)

    def matches(self, properties: dict[str, Any]) -> bool:
        if self.key not in properties or properties[self.key] is None:
            return False
        return str(properties[self.key]) in self.values


class BillableMetricCreate(BaseModel):
    """Payload to create a billable metric."""

    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., pattern=r"^[a-z0-9_]+$")
    description: str | None = Field(default=None, max_length=500)
    aggregation_type: AggregationType
    field_name: str | None = None
    recurring: bool = False
    filters: list[MetricFilter] = Field(default_factory=list)


class BillableMetricUpdate(BaseModel):
    """Partial update of a billable metric. The code is immutable."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    field_name: str | None = None
    recurring: bool | None = None
    filters: list[MetricFilter] | None = None


class BillableMetric(BaseModel):
    """A named, typed definition of what usage to count."""

    id: str
    name: str
    code: str
    description: str | None = None
    aggregation_type: AggregationType
    field_name: str | None = None
    recurring: bool = False
    filters: list[MetricFilter] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    def matches(self, properties: dict[str, Any]) -> bool:
        """Check an event's properties against every declared filter."""
        return all(f.matches(properties) for f in self.filters)


# ==================== USAGE EVENTS ====================


class EventCreate(BaseModel):
    """Incoming usage event."""

    transaction_id: str = Field(..., min_length=1, description="Idempotency key")
    subscription_id: str = Field(
        ..., min_length=1, description="Subscription ID or external subscription ID"
    )
    code: str = Field(..., min_length=1, description="Billable metric code")
    timestamp: datetime | None = Field(default=None, description="Defaults to now")
    properties: dict[str, Any] | None = None

    @field_validator("timestamp")
    @classmethod
    def normalise_timestamp(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class UsageEvent(BaseModel):
    """A stored, immutable usage event."""

    model_config = ConfigDict(frozen=True)

    id: str
    transaction_id: str
    subscription_id: str
    code: str
    timestamp: datetime
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class BatchEventsCreate(BaseModel):
    """Batch of incoming usage events."""

    events: list[EventCreate]


class BatchItemResult(BaseModel):
    """Outcome of one element of a batch."""

    transaction_id: str
    status: EventStatus
    event_id: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    """Outcome of a whole batch, in input order."""

    total: int
    created: int
    duplicates: int
    errors: int
    results: list[BatchItemResult]


class PageMeta(BaseModel):
    """Pagination metadata."""

    total: int
    page: int
    per_page: int
    total_pages: int


class EventPage(BaseModel):
    """A page of usage events."""

    data: list[UsageEvent]
    meta: PageMeta


class AggregationResult(BaseModel):
    """Usage value of a metric over a period."""

    subscription_id: str
    code: str
    aggregation_type: AggregationType
    period_start: datetime
    period_end: datetime
    value: Decimal
    event_count: int
    carried_forward: Decimal = Decimal("0")


# ==================== SUBSCRIPTIONS & PLANS ====================


class Subscription(BaseModel):
    """Subscription as exposed by the subscription directory."""

    id: str
    external_id: str | None = None
    customer_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    last_progressive_billing_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is SubscriptionStatus.ACTIVE


class GraduatedRange(BaseModel):
    """One tier of a graduated or volume price."""

    model_config = ConfigDict(frozen=True)

    from_value: Decimal = Field(..., ge=0)
    to_value: Decimal | None = None
    per_unit_amount: Decimal = Field(default=Decimal("0"), ge=0)
    flat_amount: Decimal = Field(default=Decimal("0"), ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "GraduatedRange":
        if self.to_value is not None and self.to_value < self.from_value:
            raise ValueError("to_value must be greater than or equal to from_value")
        return self


class Charge(BaseModel):
    """A usage charge attached to a plan."""

    id: str
    billable_metric_id: str
    charge_model: ChargeModel = ChargeModel.STANDARD
    properties: dict[str, Any] = Field(default_factory=dict)
    graduated_ranges: list[GraduatedRange] = Field(default_factory=list)


class Plan(BaseModel):
    """Plan as exposed by the plan catalog."""

    id: str
    code: str
    name: str = ""
    amount_currency: str = "USD"
    progressive_billing_threshold: Decimal | None = None
    charges: list[Charge] = Field(default_factory=list)


# ==================== TAXES ====================


class TaxCreate(BaseModel):
    """Payload to create a tax."""

    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
    rate: Decimal = Field(..., ge=0, le=100, description="Percentage")
    description: str | None = None
    applied_by_default: bool = False


class TaxUpdate(BaseModel):
    """Partial update of a tax. The code is immutable."""

    name: str | None = Field(default=None, min_length=1)
    rate: Decimal | None = Field(default=None, ge=0, le=100)
    description: str | None = None
    applied_by_default: bool | None = None


class Tax(BaseModel):
    """A tax rate."""

    id: str
    name: str
    code: str
    rate: Decimal
    description: str | None = None
    applied_by_default: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class AppliedTax(BaseModel):
    """A tax selected by resolution."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    code: str
    rate: Decimal

    @classmethod
    def from_tax(cls, tax: Tax) -> "AppliedTax":
        return cls(id=tax.id, name=tax.name, code=tax.code, rate=tax.rate)


class TaxAssignment(BaseModel):
    """A tax attached to a customer, plan or charge."""

    level: TaxLevel
    entity_id: str
    tax_id: str


class TaxPage(BaseModel):
    """A page of taxes."""

    data: list[Tax]
    meta: PageMeta


# ==================== PLAN OVERRIDES ====================


class OverriddenPrice(BaseModel):
    """Customer-specific plan price in one currency."""

    model_config = ConfigDict(frozen=True)

    currency: str = Field(..., min_length=3, max_length=3)
    amount: Decimal = Field(..., ge=0)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class OverriddenCharge(BaseModel):
    """Customer-specific configuration of one plan charge."""

    model_config = ConfigDict(frozen=True)

    charge_id: str = Field(..., min_length=1)
    properties: dict[str, Any] | None = None
    graduated_ranges: list[GraduatedRange] | None = None


class ChargeOverride(BaseModel):
    """Resolved charge override."""

    model_config = ConfigDict(frozen=True)

    properties: dict[str, Any] | None = None
    graduated_ranges: list[GraduatedRange] | None = None


def _check_unique(values: list[str], what: str) -> None:
    seen: set[str] = set()
    for value in values:
        if value in seen:
            raise ValueError(f"duplicate {what}: {value}")
        seen.add(value)


class _OverrideFields(BaseModel):
    overridden_prices: list[OverriddenPrice] | None = None
    overridden_minimum_commitment: Decimal | None = Field(default=None, ge=0)
    overridden_charges: list[OverriddenCharge] | None = None
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def check_duplicates(self):
        if self.overridden_prices:
            _check_unique([p.currency for p in self.overridden_prices], "currency")
        if self.overridden_charges:
            _check_unique([c.charge_id for c in self.overridden_charges], "charge_id")
        return self


class PlanOverrideCreate(_OverrideFields):
    """Payload to create a plan override."""

    customer_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)


class PlanOverrideUpdate(_OverrideFields):
    """Partial update of a plan override; only fields that are sent change."""


class PlanOverride(_OverrideFields):
    """Customer-specific replacement of plan defaults."""

    id: str
    customer_id: str
    plan_id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class PlanOverridePage(BaseModel):
    """A page of plan overrides."""

    data: list[PlanOverride]
    meta: PageMeta
