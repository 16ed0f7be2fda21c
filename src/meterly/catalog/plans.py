"""
Plan catalog.

Read side of plans and their usage charges, owned by the catalog
management layer.
"""

from __future__ import annotations

from meterly.core.errors import NotFoundError
from meterly.core.models import Charge, Plan
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace


class PlanCatalog:
    """Plan lookups for one tenant."""

    def __init__(self, storage: StorageBackend, namespace: TenantNamespace):
        self._storage = storage
        self._plans_key = namespace.key("plans")

    async def save(self, plan: Plan) -> Plan:
        await self._storage.hset(self._plans_key, plan.id, plan.model_dump_json())
        return plan

    async def get(self, plan_id: str) -> Plan:
        raw = await self._storage.hget(self._plans_key, plan_id)
        if raw is None:
            raise NotFoundError("Plan not found")
        return Plan.model_validate_json(raw)

    async def charges_for_metric(self, metric_id: str) -> list[Charge]:
        """Every charge, across all plans, that bills the given metric."""
        data = await self._storage.hgetall(self._plans_key)
        return [
            charge
            for raw in data.values()
            for charge in Plan.model_validate_json(raw).charges
            if charge.billable_metric_id == metric_id
        ]
