"""
Core interfaces defining the contracts between runtime components.
"""

from .lifecycle import IStartable, IStoppable, IHealthCheckable, IComponent
from .transport import ITransport
from .security import ICryptoProvider
from .dispatch import IDispatcher

__all__ = [
    "IStartable",
    "IStoppable",
    "IHealthCheckable",
    "IComponent",
    "ITransport",
    "ICryptoProvider",
    "IDispatcher",
]
