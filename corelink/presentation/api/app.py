"""
FastAPI application factory for HTTP helper cores.

One app serves one helper: the main core posts frames to ``/dispatch``
and collects replies from ``/dispatch/outbox``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI

from ...application.helper import HelperNode
from ...infrastructure.config.models import ApplicationConfig
from .middleware import ErrorHandlerMiddleware, RequestTimingMiddleware, new_http_metrics
from .routers import dispatch, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the helper node for as long as the server runs."""
    node: HelperNode = app.state.node
    await node.start()
    logger.info(f"Helper core {node.core_id} accepting frames over HTTP")
    try:
        yield
    finally:
        await node.stop()
        logger.info(f"Helper core {node.core_id} stopped serving HTTP")


def create_app(node: HelperNode, config: ApplicationConfig) -> FastAPI:
    """
    Create the HTTP endpoint of a helper core.

    Args:
        node: Helper node answering the main core
        config: Application configuration

    Returns:
        FastAPI application; the node starts and stops with its lifespan
    """
    app = FastAPI(
        title=f"{config.name} helper {node.core_id}",
        version=config.version,
        description="Helper core endpoint for encrypted task dispatch",
        debug=config.debug,
        lifespan=lifespan
    )
    app.state.node = node
    app.state.config = config
    app.state.http_metrics = new_http_metrics()

    # the last middleware added runs first
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestTimingMiddleware)

    app.include_router(dispatch.router, prefix="/dispatch", tags=["dispatch"])
    app.include_router(health.router, prefix="/health", tags=["health"])

    @app.get("/", tags=["root"])
    async def root() -> Dict[str, Any]:
        return {
            "name": app.title,
            "version": app.version,
            "core_id": node.core_id,
            "health_url": "/health/live"
        }

    return app
