"""
Domain models for cores, trust state, requests and wire messages.

These models are plain dataclasses and enums without I/O.
"""

from .cores import CoreConfig, CoreState, CoreStatus, TransportKind
from .trust import NonceHistory, SessionKey, TrustRecord
from .requests import Request, RequestStatus, Response
from .messages import Envelope, MessageType

__all__ = [
    "CoreConfig",
    "CoreState",
    "CoreStatus",
    "TransportKind",
    "NonceHistory",
    "SessionKey",
    "TrustRecord",
    "Request",
    "RequestStatus",
    "Response",
    "Envelope",
    "MessageType",
]
