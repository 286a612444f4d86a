"""
Core service implementations.

Trust, handshake, registry, dispatch and health services built on the
interfaces in core.interfaces.
"""

from .core_registry import CoreRegistry
from .dispatcher import Dispatcher
from .handshake import HandshakeAttempt, HandshakeProtocol, HandshakeState
from .health_monitor import HealthMonitor
from .operations import OperationRegistry
from .peer_link import PeerLink
from .trust_store import TrustStore

__all__ = [
    "CoreRegistry",
    "Dispatcher",
    "HandshakeAttempt",
    "HandshakeProtocol",
    "HandshakeState",
    "HealthMonitor",
    "OperationRegistry",
    "PeerLink",
    "TrustStore",
]
