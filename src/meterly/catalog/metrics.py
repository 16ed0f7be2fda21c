"""
Billable metric catalog.

Stores metric definitions per tenant; metric codes are unique and
immutable once created.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from meterly.core.errors import BadRequestError, ConflictError, NotFoundError
from meterly.core.models import (
    AggregationType,
    BillableMetric,
    BillableMetricCreate,
    BillableMetricUpdate,
    new_id,
    utcnow,
)
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace

if TYPE_CHECKING:
    from meterly.catalog.plans import PlanCatalog

logger = structlog.get_logger()


def _check_field_name(aggregation_type: AggregationType, field_name: str | None) -> None:
    if aggregation_type.requires_field and not field_name:
        raise BadRequestError(
            f"field_name is required for {aggregation_type.value} aggregation type"
        )


class MetricCatalog:
    """Create, read, update and delete billable metrics for one tenant."""

    def __init__(
        self,
        storage: StorageBackend,
        namespace: TenantNamespace,
        plans: PlanCatalog | None = None,
    ):
        self._storage = storage
        self._plans = plans
        self._metrics_key = namespace.key("metrics")
        self._codes_key = namespace.key("metrics", "codes")

    async def create(self, payload: BillableMetricCreate) -> BillableMetric:
        """
        Create a metric.

        Raises:
            BadRequestError: field_name missing for an aggregation that needs it
            ConflictError: code already in use
        """
        _check_field_name(payload.aggregation_type, payload.field_name)

        metric = BillableMetric(id=new_id("bm"), **payload.model_dump())

        # The code index is the uniqueness point; the body is written with it
        if not await self._storage.hsetnx_with_writes(
            self._codes_key,
            metric.code,
            metric.id,
            hset=[(self._metrics_key, metric.id, metric.model_dump_json())],
        ):
            raise ConflictError(f"Billable metric with code '{metric.code}' already exists")

        logger.info("Billable metric created", metric_id=metric.id, code=metric.code)
        return metric

    async def get(self, metric_id: str) -> BillableMetric:
        raw = await self._storage.hget(self._metrics_key, metric_id)
        if raw is None:
            raise NotFoundError("Billable metric not found")
        return BillableMetric.model_validate_json(raw)

    async def get_by_code(self, code: str) -> BillableMetric:
        """
        Look up a metric by its code.

        Raises:
            NotFoundError: no metric with this code
        """
        metric_id = await self._storage.hget(self._codes_key, code)
        raw = await self._storage.hget(self._metrics_key, metric_id) if metric_id else None
        if raw is None:
            raise NotFoundError(f"Billable metric with code '{code}' not found")
        return BillableMetric.model_validate_json(raw)

    async def list_metrics(self) -> list[BillableMetric]:
        """All metrics, newest first."""
        data = await self._storage.hgetall(self._metrics_key)
        metrics = [BillableMetric.model_validate_json(raw) for raw in data.values()]
        return sorted(metrics, key=lambda m: m.created_at, reverse=True)

    async def update(self, metric_id: str, payload: BillableMetricUpdate) -> BillableMetric:
        metric = await self.get(metric_id)
        # Only description and field_name may be cleared
        changes = {
            k: v
            for k, v in payload.model_dump(exclude_unset=True).items()
            if v is not None or k in ("description", "field_name")
        }
        if "field_name" in changes:
            _check_field_name(metric.aggregation_type, changes["field_name"])

        updated = BillableMetric.model_validate(
            {**metric.model_dump(), **changes, "updated_at": utcnow()}
        )
        await self._storage.hset(self._metrics_key, metric_id, updated.model_dump_json())
        return updated

    async def delete(self, metric_id: str) -> None:
        """
        Delete a metric.

        Raises:
            NotFoundError: unknown metric
            BadRequestError: metric is still referenced by a plan charge
        """
        metric = await self.get(metric_id)

        if self._plans is not None:
            charges = await self._plans.charges_for_metric(metric_id)
            if charges:
                raise BadRequestError(
                    "Cannot delete billable metric that is used in charges"
                )

        await self._storage.hdel(self._metrics_key, metric_id)
        await self._storage.hdel(self._codes_key, metric.code)
        logger.info("Billable metric deleted", metric_id=metric_id, code=metric.code)
