"""
Request and response domain models for dispatched work.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional

from ..exceptions import CorelinkError, error_from_descriptor


class RequestStatus(Enum):
    """Request lifecycle status."""
    PENDING = auto()     # Created, not yet transmitted
    IN_FLIGHT = auto()   # Transmitted, awaiting a response
    COMPLETED = auto()   # Response received, operation succeeded
    FAILED = auto()      # Transmit failed or the operation returned an error
    TIMED_OUT = auto()   # No response in time, or the caller gave up

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.TIMED_OUT)


_ALLOWED_TRANSITIONS = {
    RequestStatus.PENDING: {
        RequestStatus.IN_FLIGHT, RequestStatus.FAILED, RequestStatus.TIMED_OUT
    },
    RequestStatus.IN_FLIGHT: {
        RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.TIMED_OUT
    },
}


@dataclass
class Request:
    """A unit of work addressed to one helper core."""

    core_id: int
    operation: str
    payload: bytes = b""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    status: RequestStatus = RequestStatus.PENDING
    finished_at: Optional[float] = None
    error: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if not self.operation:
            raise ValueError("Operation name cannot be empty")

    def transition(self, status: RequestStatus) -> bool:
        """
        Move to a new status.

        Returns False, leaving the request untouched, when the move would
        leave a terminal state or skip backwards.
        """
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            return False
        self.status = status
        if status.is_terminal:
            self.finished_at = time.time()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request_id': self.request_id,
            'core_id': self.core_id,
            'operation': self.operation,
            'payload_size': len(self.payload),
            'created_at': self.created_at,
            'finished_at': self.finished_at,
            'status': self.status.name,
            'error': self.error,
        }


@dataclass
class Response:
    """Outcome of a request, as reported by the responding core."""

    request_id: str
    core_id: int
    result: Optional[bytes] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        """Raise the typed error carried by this response, if any."""
        if self.error is not None:
            raise self.to_exception()

    def to_exception(self) -> CorelinkError:
        if self.error is None:
            raise ValueError("Response carries no error")
        return error_from_descriptor(self.error, core_id=self.core_id,
                                     request_id=self.request_id)

    @classmethod
    def success(cls, request_id: str, core_id: int, result: bytes) -> 'Response':
        return cls(request_id=request_id, core_id=core_id, result=result)

    @classmethod
    def failure(cls, request_id: str, core_id: int, error: CorelinkError) -> 'Response':
        return cls(request_id=request_id, core_id=core_id, error={
            'kind': error.kind,
            'message': error.message,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request_id': self.request_id,
            'core_id': self.core_id,
            'ok': self.ok,
            'result_size': len(self.result) if self.result is not None else None,
            'error': self.error,
        }
