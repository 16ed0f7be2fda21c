"""Shared fixtures for meterly tests."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from meterly.core.config import Settings
from meterly.core.models import (
    AggregationType,
    BillableMetricCreate,
    Charge,
    ChargeModel,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from meterly.storage.backend import MemoryStorage
from meterly.tenancy import TenantRegistry
from meterly.utils.metrics import Metrics

PERIOD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 2, 1, tzinfo=timezone.utc)


class FaultyStorage(MemoryStorage):
    """MemoryStorage whose next compound writes can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0
        self.keep_guard = False

    def fail_next_writes(self, times: int = 1, keep_guard: bool = False) -> None:
        """
        Fail the next `times` compound writes with ConnectionError.

        With keep_guard the guarded hash field is stored before the failure,
        as when a connection drops after the first command of a write.
        """
        self.failures = times
        self.keep_guard = keep_guard

    async def hsetnx_with_writes(self, key, field, value, *, hset=(), zadd=()):
        if self.failures:
            self.failures -= 1
            if self.keep_guard:
                await self.hsetnx(key, field, value)
            raise ConnectionError("connection lost")
        return await super().hsetnx_with_writes(key, field, value, hset=hset, zadd=zadd)


@pytest.fixture
def storage():
    return FaultyStorage()


@pytest.fixture
def collector():
    return Metrics()


@pytest.fixture
def registry(storage, collector):
    return TenantRegistry(storage, Settings(), metrics=collector)


@pytest.fixture
def tenant(registry):
    return registry.get("acme")


@pytest_asyncio.fixture
async def plan(tenant, api_calls):
    return await tenant.plans.save(Plan(
        id="plan_1",
        code="startup",
        name="Startup",
        amount_currency="USD",
        progressive_billing_threshold=Decimal("10"),
        charges=[
            Charge(
                id="chg_1",
                billable_metric_id=api_calls.id,
                charge_model=ChargeModel.STANDARD,
                properties={"amount": "0.5"},
            ),
        ],
    ))


@pytest_asyncio.fixture
async def subscription(tenant):
    return await tenant.subscriptions.save(Subscription(
        id="sub_1",
        external_id="ext_1",
        customer_id="cus_1",
        plan_id="plan_1",
        status=SubscriptionStatus.ACTIVE,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    ))


@pytest_asyncio.fixture
async def pending_subscription(tenant):
    return await tenant.subscriptions.save(Subscription(
        id="sub_pending",
        customer_id="cus_2",
        plan_id="plan_1",
        status=SubscriptionStatus.PENDING,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    ))


@pytest_asyncio.fixture
async def api_calls(tenant):
    return await tenant.metrics.create(BillableMetricCreate(
        name="API calls",
        code="api_calls",
        aggregation_type=AggregationType.COUNT,
    ))


@pytest_asyncio.fixture
async def tokens(tenant):
    return await tenant.metrics.create(BillableMetricCreate(
        name="Tokens",
        code="tokens",
        aggregation_type=AggregationType.SUM,
        field_name="tokens",
    ))
