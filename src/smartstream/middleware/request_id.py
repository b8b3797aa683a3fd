"""Request correlation and HTTP metrics middleware.

Every request gets an ID (the client's X-Request-ID if sent, otherwise a
UUID4) that is echoed in the response header and attached to log records
as ``request_id``. Request counts and latencies go to Prometheus labelled
by route template (``/api/streams/{key}/start``), never by concrete path,
so new stream keys do not create new time series.

Logging Strategy:
    DEBUG - Incoming requests, client-provided IDs
    INFO  - Completed 2xx/3xx responses with latency
    WARN  - 4xx responses
    ERROR - 5xx responses, exceptions escaping the app
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .. import metrics

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _endpoint(request: Request) -> str:
    """Route template for the request, "unmatched" for unknown paths."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag requests with an ID and record HTTP metrics.

    Args:
        app: ASGI application
        header_name: Header carrying the request ID
    """

    def __init__(self, app: ASGIApp, header_name: str = REQUEST_ID_HEADER) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(self.header_name)
        if request_id:
            logger.debug(f"Client request ID: {request_id}")
        else:
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        logger.debug(f"→ {request.method} {request.url.path}", extra={"request_id": request_id})
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} raised {type(e).__name__}: {e}",
                exc_info=True,
                extra={"request_id": request_id},
            )
            raise
        finally:
            elapsed = time.perf_counter() - started
            metrics.track_http_request(request.method, _endpoint(request), status_code, elapsed)

        response.headers[self.header_name] = request_id
        logger.log(
            _level_for(status_code),
            f"← {request.method} {request.url.path} {status_code} ({elapsed * 1000:.1f}ms)",
            extra={"request_id": request_id, "status_code": status_code},
        )
        return response


def get_request_id(request: Request) -> str | None:
    """Request ID stored by the middleware, None if it is not installed."""
    return getattr(request.state, "request_id", None)
