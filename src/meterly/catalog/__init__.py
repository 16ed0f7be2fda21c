"""
Catalog lookups: billable metrics, plans and subscriptions.
"""

from meterly.catalog.metrics import MetricCatalog
from meterly.catalog.plans import PlanCatalog
from meterly.catalog.subscriptions import SubscriptionDirectory

__all__ = [
    "MetricCatalog",
    "PlanCatalog",
    "SubscriptionDirectory",
]
