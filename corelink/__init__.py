"""
Corelink - secure task dispatch between a main core and a pool of helper cores.

The main core authenticates each helper through a four-step handshake,
derives per-helper session keys and sends AES-GCM encrypted requests to the
least loaded helper over a child-process pipe or HTTP.
"""

__version__ = "0.1.0"

# Public API exports
from .core.interfaces.lifecycle import IStartable, IStoppable, IHealthCheckable, IComponent
from .core.interfaces.transport import ITransport
from .core.interfaces.dispatch import IDispatcher
from .core.domain.cores import CoreStatus, TransportKind
from .core.domain.requests import Request, RequestStatus, Response
from .application.runtime import CorelinkRuntime
from .application.helper import HelperNode

__all__ = [
    "IStartable",
    "IStoppable",
    "IHealthCheckable",
    "IComponent",
    "ITransport",
    "IDispatcher",
    "CoreStatus",
    "TransportKind",
    "Request",
    "RequestStatus",
    "Response",
    "CorelinkRuntime",
    "HelperNode",
    "__version__",
]
