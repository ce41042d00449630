"""FastAPI diagnostics entrypoint for streamperf.

Runs one performance orchestrator for the lifetime of the app and exposes
read-only views of its state.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request

from streamperf import __version__
from streamperf.config import get_config
from streamperf.logging_config import setup_logging
from streamperf.orchestrator import PerformanceOrchestrator

# Initialize logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager (startup/shutdown).

    Args:
        app: FastAPI application instance

    Yields:
        Control during application lifetime
    """
    config = get_config()
    logger.info("Starting streamperf diagnostics...")
    logger.info(f"Host: {config.host}:{config.port}")

    async with httpx.AsyncClient() as client:
        orchestrator = PerformanceOrchestrator(config, client=client)
        app.state.orchestrator = orchestrator
        app.state.started_at = time.time()
        orchestrator.start_monitoring()
        logger.info("streamperf diagnostics ready")

        yield

        logger.info("Shutting down streamperf diagnostics...")
        orchestrator.destroy()
    logger.info("streamperf diagnostics stopped")


app = FastAPI(
    title="streamperf diagnostics",
    version=__version__,
    description="Adaptive-streaming performance controller diagnostics",
    lifespan=lifespan,
)


def _orchestrator(request: Request) -> PerformanceOrchestrator:
    return request.app.state.orchestrator


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Liveness plus monitoring state."""
    orchestrator = _orchestrator(request)
    return {
        "status": "ok",
        "monitoring": orchestrator.is_monitoring,
        "uptime_sec": time.time() - request.app.state.started_at,
        "pending_timers": orchestrator.pending_timer_count(),
    }


@app.get("/api/summary")
async def get_summary(request: Request) -> dict[str, Any]:
    """Get the performance summary.

    Returns:
        Overall score and per-component sections
    """
    return _orchestrator(request).get_performance_summary()


@app.get("/api/streaming-parameters")
async def get_streaming_parameters(request: Request) -> dict[str, Any]:
    return _orchestrator(request).get_streaming_parameters()


@app.get("/api/resources")
async def get_resources(request: Request) -> dict[str, Any]:
    """Get memory usage, resource counts and recommendations."""
    return _orchestrator(request).resource_manager.get_resource_usage_report()


@app.get("/api/cdn")
async def get_cdn(request: Request) -> dict[str, Any]:
    """Get CDN endpoint status and request metrics."""
    optimizer = _orchestrator(request).connection_optimizer
    return {
        "status": optimizer.get_cdn_status(),
        "metrics": optimizer.get_metrics(),
        "connections": optimizer.get_connection_pool_status(),
    }


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "streamperf.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
