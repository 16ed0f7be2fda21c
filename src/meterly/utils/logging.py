"""
Structured logging configuration for meterly.

Uses structlog for JSON-formatted, context-rich logging. Every entry carries
the service name and environment so that API and worker output can be told
apart once shipped.
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from meterly.core.config import get_settings

# Chatty third-party loggers kept at WARNING unless running at DEBUG
QUIET_LOGGERS = ("uvicorn.access", "httpx", "redis")


def _service_context(environment: str) -> Processor:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", "meterly")
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_service


def setup_logging(
    level: str | None = None,
    json_format: bool | None = None,
) -> None:
    """
    Configure structured logging for the API server and the worker.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON output format
    """
    settings = get_settings()
    level = (level or settings.meterly.log_level).upper()
    json_format = json_format if json_format is not None else (
        settings.meterly.log_format == "json"
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level),
    )
    if level != "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _service_context(settings.environment),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class JobDeliveryLogger:
    """
    Context manager around one delivery of a queued job.

    Binds the job's identity to every entry and measures how long the
    handler ran. A failed delivery is logged at WARNING; whether the job
    is retried or dropped is logged by the worker.
    """

    def __init__(
        self,
        logger: structlog.BoundLogger,
        job_type: str,
        job_id: str,
        tenant_id: str,
        attempt: int,
    ):
        self.logger = logger.bind(
            job_type=job_type,
            job_id=job_id,
            tenant_id=tenant_id,
            attempt=attempt,
        )
        self._started = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "JobDeliveryLogger":
        self._started = time.perf_counter()
        self.logger.debug("Delivering job")
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if exc_type:
            self.logger.warning(
                "Job delivery failed",
                error=str(exc_val),
                error_type=exc_type.__name__,
                duration_ms=round(self.elapsed_ms, 2),
            )
        else:
            self.logger.info("Job delivered", duration_ms=round(self.elapsed_ms, 2))
