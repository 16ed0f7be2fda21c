"""Tests for event ingestion."""

import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from meterly.core.errors import BadRequestError, NotFoundError
from meterly.core.models import EventCreate, EventStatus
from meterly.scheduling.progressive import SchedulingFailed
from meterly.scheduling.queue import JobType


def event(txn: str, sub: str = "sub_1", code: str = "api_calls", **kwargs) -> EventCreate:
    return EventCreate(transaction_id=txn, subscription_id=sub, code=code, **kwargs)


async def pending_check(registry, subscription_id: str = "sub_1"):
    return await registry.queue.get(
        JobType.CHECK_PROGRESSIVE_BILLING, "acme", f"progressive-{subscription_id}"
    )


class TestIngest:
    """Tests for single event ingestion."""

    @pytest.mark.asyncio
    async def test_creates_event(self, tenant, subscription, api_calls):
        ts = datetime(2024, 1, 10, tzinfo=timezone.utc)
        outcome = await tenant.ingestion.ingest(event("t1", timestamp=ts, properties={"a": 1}))

        assert outcome.created is True
        assert outcome.event.id.startswith("evt_")
        assert outcome.event.subscription_id == "sub_1"
        assert outcome.event.timestamp == ts
        assert outcome.event.properties == {"a": 1}
        assert await tenant.ingestion.get_event(outcome.event.id) == outcome.event

    @pytest.mark.asyncio
    async def test_defaults_timestamp_and_properties(self, tenant, subscription, api_calls):
        before = datetime.now(timezone.utc)
        outcome = await tenant.ingestion.ingest(event("t1"))

        assert outcome.event.properties == {}
        assert outcome.event.timestamp >= before

    @pytest.mark.asyncio
    async def test_resolves_external_id(self, tenant, subscription, api_calls):
        outcome = await tenant.ingestion.ingest(event("t1", sub="ext_1"))
        assert outcome.event.subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_replay_returns_original(self, tenant, subscription, api_calls):
        first = await tenant.ingestion.ingest(event("t1", properties={"n": 1}))
        second = await tenant.ingestion.ingest(event("t1", properties={"n": 2}))

        assert second.created is False
        assert second.event == first.event
        assert await tenant.ledger.count("sub_1") == 1

    @pytest.mark.asyncio
    async def test_replay_skips_lookups(self, tenant, subscription, api_calls):
        await tenant.ingestion.ingest(event("t1"))
        # A replay succeeds even though the code no longer resolves
        outcome = await tenant.ingestion.ingest(event("t1", code="unknown"))
        assert outcome.created is False

    @pytest.mark.asyncio
    async def test_concurrent_same_transaction(self, tenant, subscription, api_calls):
        outcomes = await asyncio.gather(
            *(tenant.ingestion.ingest(event("t1")) for _ in range(5))
        )

        assert len({o.event.id for o in outcomes}) == 1
        assert sum(1 for o in outcomes if o.created) == 1
        assert await tenant.ledger.count("sub_1") == 1

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, tenant, api_calls):
        with pytest.raises(NotFoundError):
            await tenant.ingestion.ingest(event("t1", sub="nope"))

    @pytest.mark.asyncio
    async def test_unknown_metric(self, tenant, subscription):
        with pytest.raises(NotFoundError):
            await tenant.ingestion.ingest(event("t1", code="nope"))

    @pytest.mark.asyncio
    async def test_get_unknown_event(self, tenant):
        with pytest.raises(NotFoundError):
            await tenant.ingestion.get_event("evt_missing")


class TestIngestScheduling:
    """Tests for the progressive billing side effect."""

    @pytest.mark.asyncio
    async def test_active_subscription_schedules_check(self, registry, tenant, subscription, api_calls):
        await tenant.ingestion.ingest(event("t1"))

        job = await pending_check(registry)
        assert job is not None
        assert job.payload == {"subscription_id": "sub_1"}

    @pytest.mark.asyncio
    async def test_inactive_subscription_not_scheduled(
        self, registry, tenant, pending_subscription, api_calls
    ):
        await tenant.ingestion.ingest(event("t1", sub="sub_pending"))
        assert await pending_check(registry, "sub_pending") is None

    @pytest.mark.asyncio
    async def test_replay_does_not_schedule(self, registry, tenant, subscription, api_calls):
        with patch.object(
            registry.scheduler, "schedule", new=AsyncMock(wraps=registry.scheduler.schedule)
        ) as schedule:
            await tenant.ingestion.ingest(event("t1"))
            await tenant.ingestion.ingest(event("t1"))

        assert schedule.await_count == 1

    @pytest.mark.asyncio
    async def test_queue_failure_does_not_fail_ingest(
        self, registry, tenant, subscription, api_calls, collector
    ):
        with patch.object(
            registry.queue, "enqueue", new=AsyncMock(side_effect=ConnectionError("redis down"))
        ):
            outcome = await tenant.ingestion.ingest(event("t1"))

        assert outcome.created is True
        assert await tenant.ledger.get(outcome.event.id) is not None
        assert collector.tenant("acme").schedules_failed == 1

    @pytest.mark.asyncio
    async def test_scheduler_reports_failure(self, registry):
        with patch.object(
            registry.queue, "enqueue", new=AsyncMock(side_effect=ConnectionError("redis down"))
        ):
            outcome = await registry.scheduler.schedule("acme", "sub_1")

        assert isinstance(outcome, SchedulingFailed)
        assert "redis down" in outcome.reason


class TestIngestBatch:
    """Tests for batch ingestion."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, tenant, subscription, api_calls):
        result = await tenant.ingestion.ingest_batch([
            event("t1"),
            event("t2", sub="missing"),
            event("t3"),
        ])

        assert result.total == 3
        assert result.created == 2
        assert result.errors == 1
        assert result.duplicates == 0
        assert [r.status for r in result.results] == [
            EventStatus.CREATED,
            EventStatus.ERROR,
            EventStatus.CREATED,
        ]
        assert [r.transaction_id for r in result.results] == ["t1", "t2", "t3"]
        assert "missing" in result.results[1].error

    @pytest.mark.asyncio
    async def test_duplicates_reported(self, tenant, subscription, api_calls):
        await tenant.ingestion.ingest(event("t1"))
        result = await tenant.ingestion.ingest_batch([event("t1"), event("t1"), event("t2")])

        assert [r.status for r in result.results] == [
            EventStatus.DUPLICATE,
            EventStatus.DUPLICATE,
            EventStatus.CREATED,
        ]
        assert result.duplicates == 2
        assert result.results[0].event_id == result.results[1].event_id

    @pytest.mark.asyncio
    async def test_storage_error_captured_per_item(self, tenant, subscription, api_calls):
        original = tenant.ledger.insert
        calls = {"n": 0}

        async def flaky_insert(ev):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("write failed")
            return await original(ev)

        with patch.object(tenant.ledger, "insert", new=flaky_insert):
            result = await tenant.ingestion.ingest_batch([event("t1"), event("t2"), event("t3")])

        assert result.created == 2
        assert result.results[1].status is EventStatus.ERROR
        assert result.results[1].error == "write failed"

    @pytest.mark.asyncio
    async def test_schedules_once_per_subscription(self, registry, tenant, subscription, api_calls):
        with patch.object(
            registry.scheduler, "schedule", new=AsyncMock(wraps=registry.scheduler.schedule)
        ) as schedule:
            await tenant.ingestion.ingest_batch([event(f"t{i}") for i in range(10)])

        schedule.assert_awaited_once_with("acme", "sub_1")

    @pytest.mark.asyncio
    async def test_too_many_events(self, tenant, subscription, api_calls):
        with pytest.raises(BadRequestError):
            await tenant.ingestion.ingest_batch([event(f"t{i}") for i in range(101)])
        assert await tenant.ledger.count("sub_1") == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, tenant):
        with pytest.raises(BadRequestError):
            await tenant.ingestion.ingest_batch([])

    @pytest.mark.asyncio
    async def test_records_metrics(self, tenant, subscription, api_calls, collector):
        await tenant.ingestion.ingest_batch([event("t1"), event("t2", sub="missing")])

        counters = collector.tenant("acme")
        assert counters.events_created == 1
        assert counters.events_error == 1
        assert counters.batches == 1


class TestEventsForSubscription:
    """Tests for paginated event queries."""

    @pytest.mark.asyncio
    async def test_pagination_newest_first(self, tenant, subscription, api_calls):
        for day in range(1, 6):
            await tenant.ingestion.ingest(
                event(f"t{day}", timestamp=datetime(2024, 1, day, tzinfo=timezone.utc))
            )

        page = await tenant.ingestion.events_for_subscription("sub_1", page=1, per_page=2)
        assert [e.transaction_id for e in page.data] == ["t5", "t4"]
        assert page.meta.total == 5
        assert page.meta.total_pages == 3

        last = await tenant.ingestion.events_for_subscription("sub_1", page=3, per_page=2)
        assert [e.transaction_id for e in last.data] == ["t1"]

    @pytest.mark.asyncio
    async def test_inclusive_time_range(self, tenant, subscription, api_calls):
        for day in range(1, 6):
            await tenant.ingestion.ingest(
                event(f"t{day}", timestamp=datetime(2024, 1, day, tzinfo=timezone.utc))
            )

        page = await tenant.ingestion.events_for_subscription(
            "ext_1",
            start=datetime(2024, 1, 2, tzinfo=timezone.utc),
            end=datetime(2024, 1, 4, tzinfo=timezone.utc),
        )
        assert [e.transaction_id for e in page.data] == ["t4", "t3", "t2"]
        assert page.meta.per_page == 50

    @pytest.mark.asyncio
    async def test_per_page_limit(self, tenant):
        with pytest.raises(BadRequestError):
            await tenant.ingestion.events_for_subscription("sub_1", per_page=101)

    @pytest.mark.asyncio
    async def test_empty(self, tenant):
        page = await tenant.ingestion.events_for_subscription("sub_1")
        assert page.data == []
        assert page.meta.total == 0
        assert page.meta.total_pages == 0


class TestInterruptedIngest:
    """Tests for retries after a ledger write failed partway."""

    @pytest.mark.asyncio
    async def test_retry_makes_event_visible(self, storage, registry, tenant, subscription, api_calls):
        ts = datetime(2024, 1, 10, tzinfo=timezone.utc)
        storage.fail_next_writes(keep_guard=True)

        with pytest.raises(ConnectionError):
            await tenant.ingestion.ingest(event("t1", timestamp=ts))

        retry = await tenant.ingestion.ingest(event("t1", timestamp=ts))

        assert retry.created is False
        assert retry.repaired is True
        page = await tenant.ingestion.events_for_subscription("sub_1")
        assert page.meta.total == 1
        result = await tenant.aggregation.aggregate(
            "sub_1",
            "api_calls",
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 2, 1, tzinfo=timezone.utc),
        )
        assert result.value == 1
        assert await pending_check(registry) is not None

    @pytest.mark.asyncio
    async def test_batch_retry_makes_event_visible(self, storage, tenant, subscription, api_calls):
        storage.fail_next_writes(keep_guard=True)

        first = await tenant.ingestion.ingest_batch([event("t1"), event("t2")])
        assert [r.status for r in first.results] == [EventStatus.ERROR, EventStatus.CREATED]

        retry = await tenant.ingestion.ingest_batch([event("t1")])

        assert retry.results[0].status is EventStatus.DUPLICATE
        assert await tenant.ledger.count("sub_1") == 2
