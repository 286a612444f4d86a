"""
Transport implementations: spawned processes over pipes, or HTTP.
"""

from typing import Mapping, Optional

from ...core.domain.cores import TransportKind
from ...core.interfaces.transport import ITransport
from .base import BaseTransport, TransportMetrics
from .http import HttpTransport
from .process import ProcessTransport


def create_transport(kind: TransportKind, env: Optional[Mapping[str, str]] = None,
                     **options) -> ITransport:
    """Build the transport for an implementation kind."""
    if kind is TransportKind.PROCESS:
        return ProcessTransport(env=env, **options)
    return HttpTransport(env=env, **options)


__all__ = [
    "BaseTransport",
    "HttpTransport",
    "ProcessTransport",
    "TransportMetrics",
    "create_transport",
]
