"""Dependency injection for the stream registry.

The registry is created by the application factory and stored on
``app.state.registry``. Route handlers receive it through
``Depends(get_stream_registry)``, so every request shares the same
supervisors and the same concurrency limiter without any module-level
singleton.

Logging Strategy:
    ERROR - Registry requested before application startup
"""
from __future__ import annotations

import logging

from fastapi import Request

from .registry import StreamRegistry

logger = logging.getLogger(__name__)


def get_stream_registry(request: Request) -> StreamRegistry:
    """Return the registry owned by the running application.

    Raises:
        RuntimeError: If the application was built without a registry
    """
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        logger.error("StreamRegistry requested before initialization")
        raise RuntimeError(
            "StreamRegistry not initialized. "
            "Application startup may have failed."
        )
    return registry
