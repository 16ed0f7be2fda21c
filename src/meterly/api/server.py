"""
FastAPI server for meterly.

Exposes event ingestion, usage queries and the tax and override
management endpoints. Optionally runs the job worker in-process.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from meterly import __version__
from meterly.api import deps
from meterly.api.deps import get_registry
from meterly.api.routes import all_routers
from meterly.core.config import get_settings
from meterly.core.errors import BillingError
from meterly.scheduling.queue import JobType
from meterly.storage.backend import MemoryStorage, create_storage
from meterly.tenancy import TenantRegistry
from meterly.utils.logging import setup_logging
from meterly.utils.metrics import metrics

logger = structlog.get_logger()

# Embedded worker state
worker_task: asyncio.Task | None = None
worker_stop: asyncio.Event | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    global worker_task, worker_stop

    setup_logging()
    settings = get_settings()
    logger.info("Starting meterly API server", version=__version__)

    storage = create_storage(settings.redis)
    deps.registry = TenantRegistry(storage, settings, metrics=metrics)

    if settings.scheduler.embedded_worker:
        worker_stop = asyncio.Event()
        worker = deps.registry.build_worker()
        worker_task = asyncio.create_task(worker.run_forever(worker_stop))

    logger.info(
        "Services initialized",
        storage="memory" if isinstance(storage, MemoryStorage) else "redis",
        embedded_worker=settings.scheduler.embedded_worker,
    )

    yield

    if worker_task is not None and worker_stop is not None:
        worker_stop.set()
        await worker_task
        worker_task = None

    logger.info("Shutting down meterly API server")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map service errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="meterly API",
        description="Usage metering, progressive billing and rate resolution",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BillingError, billing_error_handler)

    for router in all_routers:
        app.include_router(router)

    return app


app = create_app()


@app.get("/health")
async def health_check(
    tenants: TenantRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "storage": "memory" if isinstance(tenants.storage, MemoryStorage) else "redis",
        "worker": worker_task is not None and not worker_task.done(),
    }


@app.get("/metrics")
async def get_metrics(
    tenants: TenantRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Get application metrics."""
    summary = metrics.get_summary()

    queues: dict[str, int] = {}
    for job_type in JobType:
        try:
            queues[job_type.value] = await tenants.queue.pending(job_type)
        except Exception as e:
            logger.warning("Failed to read queue depth", job_type=job_type.value, error=str(e))
    summary["queues"] = queues

    return summary


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
) -> None:
    """Run the API server."""
    import uvicorn
    uvicorn.run(
        "meterly.api.server:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    run_server()
