"""
meterly - Usage metering and rate resolution core

Idempotent usage event ingestion, metric aggregation, debounced progressive
billing checks and hierarchical tax and override resolution for
multi-tenant usage-based billing.
"""

__version__ = "1.0.0"
__author__ = "meterly Team"

from meterly.core.errors import BadRequestError, BillingError, ConflictError, NotFoundError
from meterly.core.models import AggregationType, BillableMetric, UsageEvent
from meterly.tenancy import TenantRegistry, TenantServices

__all__ = [
    "AggregationType",
    "BadRequestError",
    "BillableMetric",
    "BillingError",
    "ConflictError",
    "NotFoundError",
    "TenantRegistry",
    "TenantServices",
    "UsageEvent",
]
