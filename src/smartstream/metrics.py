"""Prometheus metrics for observability.

Provides metrics for:
- HTTP requests (count, latency)
- Stream lifecycle (states, starts, stops, errors)
- Concurrency admission (slots in use)
- FFmpeg processes (active count, per-stream FPS)
- Progress parsing (degraded fields)
- System health (status checks)

Gauges describing the registry are refreshed by StreamRegistry after every
state transition; counters are incremented where the event happens.

Logging Strategy:
    INFO  - Module initialization
    ERROR - Metric generation failures
"""
from __future__ import annotations

import logging
from typing import Iterable, Mapping

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

from . import __version__

logger = logging.getLogger(__name__)

# ============================================================================
# Application Info
# ============================================================================

app_info = Info("smartstream_app", "Application information")
app_info.info({
    "version": __version__,
    "name": "SmartStream",
    "description": "FFmpeg stream supervisor for camera restreaming"
})

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# ============================================================================
# Stream Lifecycle Metrics
# ============================================================================

streams_total = Gauge("streams_total", "Stream keys known to the supervisor")
streams_active = Gauge("streams_active", "Streams in starting, running or stopping")

streams_by_state = Gauge(
    "streams_by_state",
    "Streams per lifecycle state",
    ["state"]
)

stream_slots_in_use = Gauge("stream_slots_in_use", "Concurrency slots currently held")

streams_start_total = Counter(
    "streams_start_total",
    "Stream start attempts",
    ["status"]  # success, denied, failure
)

streams_stop_total = Counter(
    "streams_stop_total",
    "Stream stop operations",
    ["outcome"]  # graceful, killed
)

stream_errors_total = Counter(
    "stream_errors_total",
    "Streams that ended in error",
    ["error_type"]
)

# ============================================================================
# FFmpeg Process Metrics
# ============================================================================

ffmpeg_processes_active = Gauge("ffmpeg_processes_active", "Active FFmpeg processes")

stream_fps = Gauge("stream_fps", "Encoder FPS from the latest progress line", ["stream_key"])

stream_parse_degraded_total = Counter(
    "stream_parse_degraded_total",
    "Malformed progress fields kept at their previous value",
    ["field"]
)

# ============================================================================
# System Health Metrics
# ============================================================================

health_status = Gauge("health_status", "Health status (1=healthy, 0.5=degraded, 0=unhealthy)")

health_checks_total = Counter(
    "health_checks_total",
    "Health check requests",
    ["check_type", "status"]
)

# ============================================================================
# Metrics Export
# ============================================================================

def get_metrics() -> tuple[bytes, int, dict[str, str]]:
    """Generate Prometheus metrics in text format.

    Returns:
        (body, status_code, headers) for FastAPI Response
    """
    try:
        metrics = generate_latest(REGISTRY)
        return (metrics, 200, {"Content-Type": CONTENT_TYPE_LATEST})
    except Exception as e:
        logger.error(f"Metrics generation failed: {e}", exc_info=True)
        return (b"# Error\n", 500, {"Content-Type": "text/plain"})


# ============================================================================
# Helper Functions
# ============================================================================

def track_http_request(method: str, endpoint: str, status_code: int, duration: float) -> None:
    """Track HTTP request in metrics."""
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status_code)
    ).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)


def update_stream_gauges(
    state_counts: Mapping[str, int],
    states: Iterable[str],
    slots_in_use: int,
    processes: int,
) -> None:
    """Refresh registry gauges.

    Args:
        state_counts: Number of streams per state value
        states: Every state value (absent states are set to 0)
        slots_in_use: Limiter slots currently held
        processes: Supervisors currently owning an OS process
    """
    live = 0
    for state in states:
        count = state_counts.get(state, 0)
        streams_by_state.labels(state=state).set(count)
        if state in ("starting", "running", "stopping"):
            live += count
    streams_total.set(sum(state_counts.values()))
    streams_active.set(live)
    ffmpeg_processes_active.set(processes)
    stream_slots_in_use.set(slots_in_use)


def clear_stream_fps(stream_key: str) -> None:
    """Drop the per-stream FPS series once the stream stops."""
    try:
        stream_fps.remove(stream_key)
    except KeyError:
        pass


def update_health_status(status: str) -> None:
    """Update health status gauge.

    Args:
        status: "healthy" (1.0), "degraded" (0.5), "unhealthy" (0.0)
    """
    status_map = {"healthy": 1.0, "degraded": 0.5, "unhealthy": 0.0}
    health_status.set(status_map.get(status, 0.0))


logger.info("Prometheus metrics initialized")
