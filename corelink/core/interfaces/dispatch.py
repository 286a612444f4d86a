"""
Dispatch interface: request/response correlation between cores.
"""

from abc import abstractmethod
from typing import Optional

from ..domain.requests import Response
from .lifecycle import IComponent


class IDispatcher(IComponent):
    """Interface for request dispatchers."""

    @abstractmethod
    async def send(self, target: Optional[int], operation: str,
                   payload: bytes = b"") -> str:
        """
        Dispatch an operation to a core.

        Args:
            target: Core id, or None to pick the least loaded trusted core
            operation: Name of the operation to run on the helper
            payload: Opaque operation input

        Returns:
            Request id for use with receive()

        Raises:
            NoCoreAvailableError: If no core qualifies
            HelperCrashError: If the explicit target is unresponsive
            SecurityError: If trust could not be established
            TransportError: If transmission failed after retries
        """
        pass

    @abstractmethod
    async def receive(self, request_id: str,
                      timeout: Optional[float] = None) -> Response:
        """
        Wait for the response to a dispatched request.

        Raises:
            RequestTimeoutError: If no response arrived in time
            UnknownRequestError: If the request id is not tracked
        """
        pass

    @abstractmethod
    async def handle_incoming(self, data: bytes) -> Optional[bytes]:
        """
        Handle one inbound frame and return the reply frame, if any.

        Never raises for peer-caused failures: those become error replies.
        """
        pass

    @abstractmethod
    async def ping(self, core_id: int, timeout: Optional[float] = None) -> float:
        """Send a health probe and return the round-trip time in seconds."""
        pass
