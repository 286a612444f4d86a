"""
Core module containing domain models, service interfaces and the
trust-and-dispatch services.

Nothing here depends on a particular transport or web framework.
"""

from .interfaces.lifecycle import IStartable, IStoppable, IHealthCheckable, IComponent
from .interfaces.transport import ITransport
from .interfaces.dispatch import IDispatcher
from .domain.cores import CoreConfig, CoreState, CoreStatus, TransportKind
from .domain.requests import Request, RequestStatus, Response
from .domain.messages import Envelope, MessageType

__all__ = [
    "IStartable",
    "IStoppable",
    "IHealthCheckable",
    "IComponent",
    "ITransport",
    "IDispatcher",
    "CoreConfig",
    "CoreState",
    "CoreStatus",
    "TransportKind",
    "Request",
    "RequestStatus",
    "Response",
    "Envelope",
    "MessageType",
]
