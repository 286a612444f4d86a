"""
Health check API endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ....application.helper import HelperNode
from ....infrastructure.config.models import ApplicationConfig
from ..dependencies import get_config, get_node

router = APIRouter()


class LivenessStatus(BaseModel):
    """Liveness probe answer."""
    status: str = Field(default="alive")
    core_id: int


class HealthStatus(BaseModel):
    """Detailed helper health."""
    status: str
    healthy: bool
    timestamp: str
    core_id: int
    application: Dict[str, Any]
    details: Dict[str, Any] = Field(default_factory=dict)


@router.get("/live", response_model=LivenessStatus)
async def liveness(node: HelperNode = Depends(get_node)) -> LivenessStatus:
    """Cheap probe used by the main core's transport."""
    return LivenessStatus(core_id=node.core_id)


@router.get("/", response_model=HealthStatus)
async def health_check(
    request: Request,
    node: HelperNode = Depends(get_node),
    config: ApplicationConfig = Depends(get_config)
) -> HealthStatus:
    """Helper health with dispatcher and HTTP traffic details."""
    health = await node.check_health()
    details = dict(health['details'])
    details['http'] = dict(getattr(request.app.state, "http_metrics", {}))
    return HealthStatus(
        status="healthy" if health['healthy'] else "unhealthy",
        healthy=health['healthy'],
        timestamp=datetime.now(timezone.utc).isoformat(),
        core_id=node.core_id,
        application={"name": config.name, "version": config.version},
        details=details,
    )
