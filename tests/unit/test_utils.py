"""Tests for utility modules."""

import pytest
import structlog
from structlog.testing import capture_logs

from meterly.utils.logging import JobDeliveryLogger, _service_context
from meterly.utils.metrics import Metrics
from meterly.utils.retry import RetryConfig, calculate_delay


class TestMetrics:
    """Tests for Metrics class."""

    def test_record_events(self):
        metrics = Metrics()
        metrics.record_event("acme", "created")
        metrics.record_event("acme", "created")
        metrics.record_event("acme", "duplicate")
        metrics.record_event("acme", "error")

        counters = metrics.tenant("acme")
        assert counters.events_created == 2
        assert counters.events_duplicate == 1
        assert counters.events_error == 1
        assert counters.total_events == 4

    def test_tenants_counted_separately(self):
        metrics = Metrics()
        metrics.record_event("acme", "created")
        metrics.record_batch("globex")

        summary = metrics.get_summary()
        assert summary["total_events"] == 1
        assert summary["tenants"]["acme"]["events_created"] == 1
        assert summary["tenants"]["globex"]["batches"] == 1

    def test_tenant_snapshot_is_a_copy(self):
        metrics = Metrics()
        metrics.record_event("acme", "created")

        snapshot = metrics.tenant("acme")
        metrics.record_event("acme", "created")

        assert snapshot.events_created == 1
        assert metrics.tenant("unknown").total_events == 0

    def test_record_schedule(self):
        metrics = Metrics()
        for outcome in ("enqueued", "deduplicated", "deduplicated", "failed"):
            metrics.record_schedule("acme", outcome)

        counters = metrics.tenant("acme")
        assert counters.schedules_enqueued == 1
        assert counters.schedules_deduplicated == 2
        assert counters.schedules_failed == 1

    def test_record_job(self):
        metrics = Metrics()
        metrics.record_job("check", success=True, latency_ms=10.0)
        metrics.record_job("check", success=True, latency_ms=30.0)
        metrics.record_job("check", success=False, error_type="TimeoutError", retried=True)

        jobs = metrics.get_summary()["jobs"]["check"]
        assert jobs["delivered"] == 2
        assert jobs["avg_latency_ms"] == 20.0
        assert jobs["retried"] == 1
        assert jobs["errors"] == {"TimeoutError": 1}

    def test_reset(self):
        metrics = Metrics()
        metrics.record_event("acme", "created")
        metrics.reset()

        summary = metrics.get_summary()
        assert summary["total_events"] == 0
        assert summary["tenants"] == {}


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_values(self):
        config = RetryConfig()
        assert config.max_attempts == 5
        assert config.base_delay == 5.0
        assert config.exponential_base == 2.0
        assert config.jitter is True

    def test_should_retry(self):
        config = RetryConfig(max_attempts=3)
        assert config.should_retry(1)
        assert config.should_retry(2)
        assert not config.should_retry(3)


class TestCalculateDelay:
    """Tests for delay calculation."""

    def test_exponential_backoff(self):
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, jitter=False)

        assert calculate_delay(0, config) == 1.0
        assert calculate_delay(1, config) == 2.0
        assert calculate_delay(2, config) == 4.0

    def test_max_delay_cap(self):
        config = RetryConfig(base_delay=10.0, max_delay=30.0, jitter=False)

        delay = calculate_delay(5, config)  # Would be 320 without cap
        assert delay == 30.0

    def test_retry_after_override(self):
        config = RetryConfig(base_delay=1.0, max_delay=120.0, jitter=False)

        delay = calculate_delay(0, config, retry_after=60.0)
        assert delay == 60.0

    def test_jitter_stays_in_bounds(self):
        config = RetryConfig(base_delay=2.0, jitter=True)

        delays = [calculate_delay(1, config) for _ in range(20)]
        assert all(2.0 <= d <= 6.0 for d in delays)


class TestJobDeliveryLogger:
    """Tests for JobDeliveryLogger."""

    def test_logs_delivery_with_job_context(self):
        with capture_logs() as logs:
            with JobDeliveryLogger(
                structlog.get_logger(), "check-progressive-billing", "j1", "acme", attempt=1
            ) as delivery:
                pass

        delivered = [entry for entry in logs if entry["event"] == "Job delivered"]
        assert len(delivered) == 1
        assert delivered[0]["job_id"] == "j1"
        assert delivered[0]["tenant_id"] == "acme"
        assert delivered[0]["job_type"] == "check-progressive-billing"
        assert delivery.elapsed_ms >= 0

    def test_logs_failure_and_reraises(self):
        with capture_logs() as logs:
            with pytest.raises(RuntimeError):
                with JobDeliveryLogger(structlog.get_logger(), "generate-invoice", "j2", "acme", attempt=3):
                    raise RuntimeError("boom")

        failed = [entry for entry in logs if entry["event"] == "Job delivery failed"]
        assert failed[0]["error"] == "boom"
        assert failed[0]["error_type"] == "RuntimeError"
        assert failed[0]["attempt"] == 3
        assert failed[0]["log_level"] == "warning"


class TestServiceContext:
    """Tests for the service context processor."""

    def test_adds_service_and_environment(self):
        processor = _service_context("production")

        event = processor(None, "info", {"event": "hello"})

        assert event == {"event": "hello", "service": "meterly", "environment": "production"}

    def test_keeps_explicit_values(self):
        processor = _service_context("production")

        event = processor(None, "info", {"event": "hello", "service": "worker"})

        assert event["service"] == "worker"
