"""Tests for the billable metric catalog."""

import pytest

from meterly.core.errors import BadRequestError, ConflictError, NotFoundError
from meterly.core.models import (
    AggregationType,
    BillableMetricCreate,
    BillableMetricUpdate,
    MetricFilter,
)


class TestCreate:
    """Tests for metric creation."""

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, tenant):
        metric = await tenant.metrics.create(BillableMetricCreate(
            name="Storage",
            code="storage_gb",
            aggregation_type=AggregationType.MAX,
            field_name="gb",
        ))

        assert metric.id.startswith("bm_")
        assert await tenant.metrics.get(metric.id) == metric
        assert await tenant.metrics.get_by_code("storage_gb") == metric

    @pytest.mark.asyncio
    async def test_failed_create_keeps_code_free(self, storage, tenant):
        payload = BillableMetricCreate(
            name="API calls", code="api_calls", aggregation_type=AggregationType.COUNT
        )
        storage.fail_next_writes()

        with pytest.raises(ConnectionError):
            await tenant.metrics.create(payload)
        with pytest.raises(NotFoundError):
            await tenant.metrics.get_by_code("api_calls")

        metric = await tenant.metrics.create(payload)
        assert await tenant.metrics.get_by_code("api_calls") == metric

    @pytest.mark.asyncio
    async def test_field_required(self, tenant):
        with pytest.raises(BadRequestError) as exc_info:
            await tenant.metrics.create(BillableMetricCreate(
                name="Tokens", code="tokens", aggregation_type=AggregationType.SUM
            ))
        assert "field_name" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_duplicate_code(self, tenant, api_calls):
        with pytest.raises(ConflictError):
            await tenant.metrics.create(BillableMetricCreate(
                name="Other", code="api_calls", aggregation_type=AggregationType.COUNT
            ))

    @pytest.mark.asyncio
    async def test_codes_scoped_per_tenant(self, registry, api_calls):
        other = registry.get("globex")
        metric = await other.metrics.create(BillableMetricCreate(
            name="API calls", code="api_calls", aggregation_type=AggregationType.COUNT
        ))
        assert metric.id != api_calls.id


class TestReadUpdateDelete:
    """Tests for metric reads, updates and deletes."""

    @pytest.mark.asyncio
    async def test_unknown_code(self, tenant):
        with pytest.raises(NotFoundError):
            await tenant.metrics.get_by_code("missing")

    @pytest.mark.asyncio
    async def test_list(self, tenant, api_calls, tokens):
        codes = {m.code for m in await tenant.metrics.list_metrics()}
        assert codes == {"api_calls", "tokens"}

    @pytest.mark.asyncio
    async def test_update(self, tenant, api_calls):
        updated = await tenant.metrics.update(api_calls.id, BillableMetricUpdate(
            name="Requests",
            filters=[MetricFilter(key="method", values=["GET"])],
        ))

        assert updated.name == "Requests"
        assert updated.code == "api_calls"
        assert updated.updated_at is not None
        assert (await tenant.metrics.get_by_code("api_calls")).name == "Requests"

    @pytest.mark.asyncio
    async def test_update_cannot_clear_required_field(self, tenant, tokens):
        with pytest.raises(BadRequestError):
            await tenant.metrics.update(tokens.id, BillableMetricUpdate(field_name=None))

    @pytest.mark.asyncio
    async def test_delete_frees_code(self, tenant, api_calls):
        await tenant.metrics.delete(api_calls.id)

        with pytest.raises(NotFoundError):
            await tenant.metrics.get(api_calls.id)
        recreated = await tenant.metrics.create(BillableMetricCreate(
            name="API calls", code="api_calls", aggregation_type=AggregationType.COUNT
        ))
        assert recreated.id != api_calls.id

    @pytest.mark.asyncio
    async def test_delete_blocked_by_charge(self, tenant, plan, api_calls):
        with pytest.raises(BadRequestError):
            await tenant.metrics.delete(api_calls.id)
        assert await tenant.metrics.get(api_calls.id) == api_calls
