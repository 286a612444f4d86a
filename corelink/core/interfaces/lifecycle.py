"""
Lifecycle interfaces for components owned by a runtime context.

The runtime starts components in a fixed order and stops them in
reverse, so every long-lived piece (transports, dispatcher, health
monitor) implements the same small contract.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class IStartable(ABC):
    """Interface for components that can be started."""

    @abstractmethod
    async def start(self) -> None:
        """
        Start the component.

        Raises:
            CorelinkError: If the component fails to start.
        """
        pass


class IStoppable(ABC):
    """Interface for components that can be stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """
        Stop the component and release its resources.

        Stopping an already stopped component is a no-op.
        """
        pass


class IHealthCheckable(ABC):
    """Interface for components that can report their health status."""

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        """
        Check the health status of the component.

        Returns:
            Dict with at least:
            - 'healthy': bool
            - 'status': str describing current status
            - 'details': Dict with additional health details
        """
        pass


class IComponent(IStartable, IStoppable, IHealthCheckable):
    """Base interface for runtime components."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the component name."""
        pass
