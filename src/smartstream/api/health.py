"""Health check endpoints for service monitoring.

Provides:
- Comprehensive health status (supervisor, FFmpeg availability, streams)
- Simple alive check for container health checks
- Prometheus metrics export

Health Status Levels:
    - healthy: FFmpeg available, no stream in error
    - degraded: Some streams are in error but new starts still work
    - unhealthy: FFmpeg missing or the OS refuses to spawn processes

Logging Strategy:
    DEBUG - Health check calls, probe results
    WARN  - Degraded status, FFmpeg probe failures
    ERROR - Unhealthy status

Usage:
    >>> GET /health
    {
        "status": "healthy",
        "ffmpeg": {"available": true, "version": "ffmpeg version 6.1.1 ..."},
        "streams": [{"id": "cam1", "state": "running"}],
        "metrics": {"total": 1, "active": 1, "errors": 0, "slots_in_use": 1, "max_concurrent": 4}
    }

    >>> GET /health/live
    {"status": "alive"}
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
from typing import Any, Dict, List, Literal

from fastapi import APIRouter, Depends, Response, status

from .. import metrics
from ..models.stream import LIVE_STATES, StreamState
from ..services.container import get_stream_registry
from ..services.registry import StreamRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

HealthStatus = Literal["healthy", "degraded", "unhealthy"]
ProbeStatus = Literal["alive"]

FFMPEG_PROBE_TIMEOUT: float = 5.0
"""Seconds allowed for ``ffmpeg -version``."""


async def probe_ffmpeg(binary: str) -> tuple[bool, str | None]:
    """Run ``<binary> -version`` and report whether it works.

    Returns:
        (available, first line of the version banner or the failure reason)
    """
    try:
        process = await asyncio.create_subprocess_exec(
            binary, "-version",
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as e:
        logger.warning(f"FFmpeg probe failed to spawn {binary}: {e}")
        return False, f"{binary}: {e.strerror or e}"

    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout=FFMPEG_PROBE_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"FFmpeg probe timed out after {FFMPEG_PROBE_TIMEOUT}s")
        return False, "ffmpeg -version timed out"

    first_line = output.decode("utf-8", errors="replace").splitlines()[0] if output else ""
    if process.returncode != 0:
        logger.warning(f"FFmpeg probe exited with code {process.returncode}")
        return False, first_line or f"exit code {process.returncode}"

    logger.debug(f"FFmpeg probe: {first_line}")
    return True, first_line


def calculate_health_status(
    registry: StreamRegistry,
    ffmpeg_available: bool,
) -> tuple[HealthStatus, List[str]]:
    """Overall status plus the reasons behind it."""
    errors: List[str] = []

    if registry.fatal_error:
        errors.append(f"Process spawning unavailable: {registry.fatal_error}")
    if not ffmpeg_available:
        errors.append(f"FFmpeg binary not usable: {registry.settings.ffmpeg_binary}")
    if errors:
        return "unhealthy", errors

    for stream_status in registry.list_all():
        if stream_status.state == StreamState.ERROR:
            cause = stream_status.error_cause.value if stream_status.error_cause else "unknown"
            errors.append(f"{stream_status.id}: {cause}: {stream_status.error_message}")

    return ("degraded" if errors else "healthy"), errors


# ============================================================================
# Health Check Endpoints
# ============================================================================

@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(
    registry: StreamRegistry = Depends(get_stream_registry)
) -> Dict[str, Any]:
    """Supervisor health including FFmpeg availability and stream states.

    Always returns 200 so the body can be inspected; orchestrators should
    use /health/live for liveness.
    """
    logger.debug("Processing health check")

    available, version = await probe_ffmpeg(registry.settings.ffmpeg_binary)
    overall_status, error_messages = calculate_health_status(registry, available)
    statuses = registry.list_all()

    response: Dict[str, Any] = {
        "status": overall_status,
        "ffmpeg": {"available": available, "version": version},
        "streams": [{"id": s.id, "state": s.state.value} for s in statuses],
        "metrics": {
            "total": len(statuses),
            "active": sum(1 for s in statuses if s.state in LIVE_STATES),
            "errors": sum(1 for s in statuses if s.state == StreamState.ERROR),
            "slots_in_use": registry.limiter.in_use,
            "max_concurrent": registry.limiter.max_concurrent,
        },
    }
    if error_messages:
        response["errors"] = error_messages

    if overall_status == "unhealthy":
        logger.error(f"Health check: unhealthy - {'; '.join(error_messages)}")
    elif overall_status == "degraded":
        logger.warning(f"Health check: degraded - {len(error_messages)} stream(s) in error")

    metrics.update_health_status(overall_status)
    metrics.health_checks_total.labels(check_type="full", status=overall_status).inc()
    return response


@router.get("/health/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> Dict[str, ProbeStatus]:
    """Liveness probe. Does not check FFmpeg or streams."""
    metrics.health_checks_total.labels(check_type="live", status="alive").inc()
    return {"status": "alive"}


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus text exposition."""
    body, status_code, headers = metrics.get_metrics()
    return Response(content=body, status_code=status_code, headers=headers)
