"""Utility modules for meterly."""

from meterly.utils.logging import JobDeliveryLogger, setup_logging
from meterly.utils.metrics import Metrics, metrics
from meterly.utils.retry import RetryConfig, calculate_delay

__all__ = [
    "setup_logging",
    "JobDeliveryLogger",
    "Metrics",
    "metrics",
    "RetryConfig",
    "calculate_delay",
]
