"""
Transport interface: byte-level delivery to a named core.

Two implementations exist (Process and HTTP). The runtime selects one at
configuration time; nothing above this interface branches on the kind.
"""

from abc import abstractmethod
from typing import Iterable

from ..domain.cores import CoreConfig, TransportKind
from .lifecycle import IComponent


class ITransport(IComponent):
    """Uniform send/receive/liveness contract over a pool of cores."""

    @property
    @abstractmethod
    def kind(self) -> TransportKind:
        """Transport implementation kind."""
        pass

    @abstractmethod
    def add_cores(self, cores: Iterable[CoreConfig]) -> None:
        """
        Register the cores this transport will reach.

        Must be called before start().
        """
        pass

    @abstractmethod
    async def send(self, core_id: int, data: bytes) -> None:
        """
        Deliver one frame to a core.

        Returns once the transport has accepted the frame.

        Raises:
            TransportError: On I/O failure; ``retryable`` tells the caller
                whether another attempt may succeed.
            HelperCrashError: If the helper is known to have exited.
            UnknownCoreError: If the core is not registered.
        """
        pass

    @abstractmethod
    async def receive(self, core_id: int) -> bytes:
        """
        Wait for the next frame from a core.

        Raises:
            TransportError: If the channel failed or was closed.
        """
        pass

    @abstractmethod
    async def is_alive(self, core_id: int) -> bool:
        """Lightweight liveness check that never raises."""
        pass

    @abstractmethod
    async def restart(self, core_id: int) -> None:
        """Tear down and re-establish the channel to one core."""
        pass
