"""
HTTP middleware for the helper API.

Errors that escape a route are answered in the same ``{kind, message}``
shape as wire error descriptors. Request counters live on
``app.state.http_metrics`` so the health route can report them.
"""

import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

SLOW_REQUEST_THRESHOLD = 1.0


def new_http_metrics() -> Dict[str, Any]:
    return {
        'requests': 0,
        'server_errors': 0,
        'slow_requests': 0,
        'frames_posted': 0,
        'outbox_polls': 0,
    }


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn unhandled route failures into a 500 error descriptor."""

    async def dispatch(self, request: Request,
                       call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error in {request.method} {request.url.path}: {e}")
            message = str(e) if request.app.debug else "Helper failed to process the request"
            return JSONResponse(
                status_code=500,
                content={
                    'error': {'kind': type(e).__name__, 'message': message},
                    'request_id': getattr(request.state, "request_id", None),
                },
            )


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Tag responses with timing and a request id, and count traffic."""

    async def dispatch(self, request: Request,
                       call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        metrics = request.app.state.http_metrics
        started = time.monotonic()
        request.state.request_id = uuid.uuid4().hex

        response = await call_next(request)
        elapsed = time.monotonic() - started

        path = request.url.path
        metrics['requests'] += 1
        if response.status_code >= 500:
            metrics['server_errors'] += 1
        if response.status_code == 202:
            metrics['frames_posted'] += 1
        if path.endswith("/outbox"):
            # long-polls wait on purpose and never count as slow
            metrics['outbox_polls'] += 1
        elif elapsed > SLOW_REQUEST_THRESHOLD:
            metrics['slow_requests'] += 1
            logger.warning(f"Slow request: {request.method} {path} took {elapsed:.3f}s")

        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        response.headers["X-Request-ID"] = request.state.request_id
        return response
