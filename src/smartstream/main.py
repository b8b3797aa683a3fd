"""FastAPI application entry point for SmartStream.

SmartStream supervises one FFmpeg restreaming process per camera: it
admits a bounded number of concurrent streams, parses FFmpeg progress into
live statistics, and restarts streams whose configuration changes.

Architecture:
    - FastAPI async web framework, one event loop
    - StreamRegistry created by create_app() and stored on app.state
    - One StreamSupervisor per stream key, FFmpeg as OS child processes
    - YAML config store for per-stream configs (config_io)

Lifespan:
    Startup: start every stored config with ``autostart: true``
    Shutdown: stop every live stream concurrently

Logging Strategy:
    INFO  - Application lifecycle, autostart results
    WARN  - Autostart failures for individual streams
    ERROR - Unrecoverable startup errors with stack traces

Run:
    uvicorn smartstream.main:app --host 0.0.0.0 --port 8000
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable
import asyncio
import logging

from fastapi import FastAPI

from . import __version__
from .api import health, streams
from .api.errors import register_exception_handlers
from .config_io import SupervisorSettings, load_settings, load_stream_configs
from .logging_config import configure_logging
from .models.stream import StreamState
from .middleware.request_id import RequestIDMiddleware
from .services.errors import StreamError
from .services.registry import StreamRegistry
from .services.supervisor import Spawner

logger = logging.getLogger(__name__)

# ============================================================================
# Boot Autostart
# ============================================================================

async def autostart_streams(registry: StreamRegistry) -> int:
    """Start every stored config flagged ``autostart``.

    Starts run concurrently; each failure is logged and does not affect the
    others. Returns the number of streams that reached running.
    """
    configs = {key: cfg for key, cfg in load_stream_configs().items() if cfg.autostart}
    if not configs:
        logger.info("No streams configured for autostart")
        return 0

    logger.info(f"Autostarting {len(configs)} stream(s)...")
    results = await asyncio.gather(
        *(registry.start(key, cfg) for key, cfg in configs.items()),
        return_exceptions=True
    )

    running = 0
    for key, result in zip(configs, results):
        if isinstance(result, StreamError):
            logger.warning(f"[{key}] Autostart failed: {result.message}")
        elif isinstance(result, BaseException):
            logger.error(f"[{key}] Autostart failed: {result}", exc_info=result)
        elif result.state == StreamState.RUNNING:
            running += 1
        else:
            logger.warning(f"[{key}] Autostart ended in {result.state.value}: {result.error_message}")

    logger.info(f"Autostart: {running}/{len(configs)} stream(s) running")
    return running


# ============================================================================
# Application Lifespan Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Autostart on startup, stop everything on shutdown."""
    registry: StreamRegistry = app.state.registry

    logger.info("=" * 80)
    logger.info(f"SmartStream {__version__} starting...")
    logger.info("=" * 80)

    try:
        await autostart_streams(registry)
    except Exception as e:
        logger.error(f"Startup error: {e}", exc_info=True)
        logger.warning("Continuing without autostarted streams")

    logger.info("SmartStream ready")

    yield

    logger.info("=" * 80)
    logger.info("SmartStream shutting down...")
    logger.info("=" * 80)

    try:
        await registry.shutdown()
    except Exception as e:
        logger.error(f"Shutdown error: {e}", exc_info=True)

    logger.info("SmartStream shutdown complete")


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    settings: SupervisorSettings | None = None,
    spawner: Spawner | None = None,
    cpu_sampler: Callable[[], float] | None = None,
) -> FastAPI:
    """Build the FastAPI application and its StreamRegistry.

    Args:
        settings: Supervisor settings (default: read from environment)
        spawner: Process factory (default: real FFmpeg via ProcessHandle)
        cpu_sampler: CPU sample source (default: system load average)
    """
    app = FastAPI(
        title="SmartStream",
        description=(
            "FFmpeg stream supervisor for camera restreaming.\n\n"
            "Features:\n"
            "- Bounded concurrent FFmpeg processes\n"
            "- Live progress statistics\n"
            "- Restart on config change\n"
            "- Autostart on boot"
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.state.registry = StreamRegistry(
        settings or load_settings(),
        spawner=spawner,
        cpu_sampler=cpu_sampler,
    )

    register_exception_handlers(app)

    app.add_middleware(RequestIDMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(streams.router, prefix="/api/streams", tags=["streams"])

    return app


configure_logging()
app = create_app()
