"""Core models, configuration and errors."""

from meterly.core.currencies import CurrencyInfo, build_currency_table
from meterly.core.errors import BadRequestError, BillingError, ConflictError, NotFoundError
from meterly.core.models import (
    AggregationType,
    BillableMetric,
    Plan,
    Subscription,
    UsageEvent,
)

__all__ = [
    "AggregationType",
    "BadRequestError",
    "BillableMetric",
    "BillingError",
    "ConflictError",
    "CurrencyInfo",
    "NotFoundError",
    "Plan",
    "Subscription",
    "UsageEvent",
    "build_currency_table",
]
