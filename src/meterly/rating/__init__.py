"""
Rating: taxes, plan overrides and charge pricing.
"""

from meterly.rating.charges import charge_cost
from meterly.rating.overrides import PlanOverrideService
from meterly.rating.taxes import TaxService, total_tax_rate

__all__ = [
    "PlanOverrideService",
    "TaxService",
    "charge_cost",
    "total_tax_rate",
]
