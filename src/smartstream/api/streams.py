"""REST API endpoints for stream lifecycle control.

This module is the only caller of the StreamRegistry. It resolves the
StreamConfig for each request (request body first, then the stored config)
and forwards lifecycle operations to the registry. Supervisor exceptions
propagate to the global handlers in api/errors.py.

Endpoints (prefix /api/streams):
    GET    ""                list statuses
    GET    /{key}            status
    POST   /{key}/start      start (201, or 200 when already live)
    POST   /{key}/stop       stop
    POST   /{key}/restart    stop then start
    DELETE /{key}            forget a non-live stream and its stored config
    GET    /{key}/stats      latest stats, history, duration
    GET    /{key}/config     stored config
    PUT    /{key}/config     store config, restart if live and needed

Security:
    Responses never contain camera credentials or platform stream keys.

Logging Strategy:
    DEBUG - Config resolution, list calls
    INFO  - Lifecycle requests and results
    WARN  - Start attempts ending in error
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Response, status

from ..config_io import delete_stream_config, get_stream_config, save_stream_config
from ..models.stream import LIVE_STATES, StreamConfig, StreamState, StreamStatus
from ..services.container import get_stream_registry
from ..services.registry import StreamRegistry
from ..utils.strings import STREAM_KEY_MASK, mask_credentials
from .errors import raise_not_found, raise_start_failed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])

# ============================================================================
# Helper Functions
# ============================================================================

def status_response(stream_status: StreamStatus) -> dict[str, Any]:
    """Serialize a status with any leaked credentials masked."""
    data = stream_status.model_dump(mode="json")
    if data.get("error_message"):
        data["error_message"] = mask_credentials(data["error_message"])
    return data


def config_response(config: StreamConfig) -> dict[str, Any]:
    """Serialize a config with credentials and stream keys masked."""
    data = config.model_dump(mode="json")
    data["input_url"] = mask_credentials(data["input_url"])
    if data.get("output_url"):
        data["output_url"] = mask_credentials(data["output_url"])
    if data.get("platform"):
        data["platform"]["stream_key"] = STREAM_KEY_MASK
    return data


def resolve_config(
    key: str,
    body: StreamConfig | None,
    registry: StreamRegistry,
    allow_last: bool = False,
) -> StreamConfig | None:
    """Pick the config for a start/restart request.

    Order: request body, stored config, then (restart only) the config the
    stream last ran with.

    Raises:
        HTTPException: 404 when no config is available
    """
    if body is not None:
        logger.debug(f"[{key}] Using config from request body")
        return body

    stored = get_stream_config(key)
    if stored is not None:
        logger.debug(f"[{key}] Using stored config")
        return stored

    if allow_last and key in registry and registry.supervisor(key).config is not None:
        logger.debug(f"[{key}] Reusing last config")
        return None

    raise_not_found("stream config", key)
    return None


def _check_started(key: str, stream_status: StreamStatus) -> None:
    if stream_status.state == StreamState.ERROR:
        logger.warning(f"[{key}] Start ended in error: {stream_status.error_message}")
        raise_start_failed(
            key,
            stream_status.error_message,
            stream_status.error_cause.value if stream_status.error_cause else None,
        )


# ============================================================================
# Status Endpoints
# ============================================================================

@router.get("")
async def list_streams(
    registry: StreamRegistry = Depends(get_stream_registry)
) -> list[dict[str, Any]]:
    """List every known stream with its status."""
    statuses = registry.list_all()
    logger.debug(f"Listed {len(statuses)} stream(s)")
    return [status_response(s) for s in statuses]


@router.get("/{key}")
async def get_stream(
    key: str,
    registry: StreamRegistry = Depends(get_stream_registry)
) -> dict[str, Any]:
    """Status of one stream. 404 for a key never referenced."""
    return status_response(registry.get(key))


@router.get("/{key}/stats")
async def get_stream_stats(
    key: str,
    registry: StreamRegistry = Depends(get_stream_registry)
) -> dict[str, Any]:
    """Latest stats, the last few progress snapshots and time since start."""
    stream_status = registry.get(key)
    supervisor = registry.supervisor(key)
    return {
        "id": key,
        "state": stream_status.state.value,
        "start_time": stream_status.start_time.isoformat() if stream_status.start_time else None,
        "duration_seconds": supervisor.duration(),
        "stats": stream_status.stats.model_dump(mode="json"),
        "history": [stats.model_dump(mode="json") for stats in supervisor.history],
    }


# ============================================================================
# Lifecycle Endpoints
# ============================================================================

@router.post("/{key}/start", status_code=status.HTTP_201_CREATED)
async def start_stream(
    key: str,
    response: Response,
    config: Optional[StreamConfig] = Body(default=None),
    registry: StreamRegistry = Depends(get_stream_registry)
) -> dict[str, Any]:
    """Start a stream with the given or stored config.

    Returns 201 with the new status, or 200 with the current status when
    the stream is already starting or running.
    """
    resolved = resolve_config(key, config, registry)
    already_live = key in registry and registry.get(key).state in LIVE_STATES

    logger.info(f"[{key}] Start requested")
    stream_status = await registry.start(key, resolved)
    _check_started(key, stream_status)

    if already_live:
        response.status_code = status.HTTP_200_OK
    logger.info(f"[{key}] Start result: {stream_status.state.value}")
    return status_response(stream_status)


@router.post("/{key}/stop")
async def stop_stream(
    key: str,
    registry: StreamRegistry = Depends(get_stream_registry)
) -> dict[str, Any]:
    """Stop a stream. Idle and errored streams are returned unchanged."""
    logger.info(f"[{key}] Stop requested")
    stream_status = await registry.stop(key)
    logger.info(f"[{key}] Stop result: {stream_status.state.value}")
    return status_response(stream_status)


@router.post("/{key}/restart")
async def restart_stream(
    key: str,
    config: Optional[StreamConfig] = Body(default=None),
    registry: StreamRegistry = Depends(get_stream_registry)
) -> dict[str, Any]:
    """Stop then start a stream, with the given, stored or last config."""
    resolved = resolve_config(key, config, registry, allow_last=True)

    logger.info(f"[{key}] Restart requested")
    stream_status = await registry.restart(key, resolved)
    _check_started(key, stream_status)
    return status_response(stream_status)


@router.delete("/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_stream(
    key: str,
    registry: StreamRegistry = Depends(get_stream_registry)
) -> Response:
    """Forget a stream and its stored config. 409 while the stream is live."""
    known = key in registry
    if known:
        registry.remove(key)

    deleted = delete_stream_config(key)
    if not known and not deleted:
        raise_not_found("stream", key)

    logger.info(f"[{key}] Stream deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Config Endpoints
# ============================================================================

@router.get("/{key}/config")
async def get_config(key: str) -> dict[str, Any]:
    """Stored config for a stream."""
    config = get_stream_config(key)
    if config is None:
        raise_not_found("stream config", key)
    return config_response(config)


@router.put("/{key}/config")
async def put_config(
    key: str,
    config: StreamConfig,
    registry: StreamRegistry = Depends(get_stream_registry)
) -> dict[str, Any]:
    """Store a config and restart the stream if it is live and a restart field changed."""
    save_stream_config(key, config)
    restarted = await registry.on_config_change(key, config)

    return {
        "config": config_response(config),
        "restarted": restarted is not None,
        "status": status_response(restarted) if restarted is not None else None,
    }
