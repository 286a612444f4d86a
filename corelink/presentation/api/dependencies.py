"""
FastAPI dependency injection utilities.

Routes reach the helper node and configuration through app state.
"""

from fastapi import HTTPException, Request, status

from ...application.helper import HelperNode
from ...infrastructure.config.models import ApplicationConfig


def get_node(request: Request) -> HelperNode:
    """
    Get the helper node serving this app.

    Raises:
        HTTPException: 503 if the node is missing or not running
    """
    node = getattr(request.app.state, "node", None)
    if node is None or not node.is_running:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Helper node not available"
        )
    return node


def get_config(request: Request) -> ApplicationConfig:
    """
    Get the application configuration from the request.

    Raises:
        HTTPException: If configuration is not available
    """
    if not hasattr(request.app.state, "config"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Application configuration not available"
        )
    return request.app.state.config
