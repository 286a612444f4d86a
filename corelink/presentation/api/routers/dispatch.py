"""
Frame exchange endpoints of an HTTP helper.

The main core POSTs frames to ``/dispatch`` and long-polls
``/dispatch/outbox`` for the replies.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from ....application.helper import HelperNode
from ....core.domain.messages import Envelope
from ....core.exceptions import MessageFormatError
from ....infrastructure.config.models import ApplicationConfig
from ....infrastructure.transports.framing import MAX_FRAME_SIZE
from ..dependencies import get_config, get_node

logger = logging.getLogger(__name__)

router = APIRouter()


class DispatchAccepted(BaseModel):
    """Acknowledgement that a frame was queued for handling."""
    accepted: bool = Field(default=True, description="Frame was queued")
    message_id: str = Field(..., description="Message id of the queued envelope")
    type: str = Field(..., description="Envelope type")


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=DispatchAccepted)
async def post_frame(
    request: Request,
    node: HelperNode = Depends(get_node)
) -> DispatchAccepted:
    """Queue one envelope from the main core."""
    body = await request.body()
    if len(body) > MAX_FRAME_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Frame exceeds {MAX_FRAME_SIZE} bytes"
        )

    try:
        envelope = Envelope.decode(body)
    except MessageFormatError as e:
        logger.warning(f"Rejected malformed frame: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    node.submit(body)
    return DispatchAccepted(message_id=envelope.message_id, type=envelope.type.value)


@router.get("/outbox", responses={204: {"description": "No reply within the wait"}})
async def poll_outbox(
    wait: Optional[float] = Query(default=None, ge=0, description="Seconds to wait for a reply"),
    node: HelperNode = Depends(get_node),
    config: ApplicationConfig = Depends(get_config)
) -> Response:
    """Return the next reply for the main core, or 204 when none arrived in time."""
    max_wait = config.server.outbox_wait_max
    timeout = max_wait if wait is None else min(wait, max_wait)

    data = await node.next_outgoing(timeout)
    if data is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return Response(content=data, media_type="application/json")
