"""
Core domain models describing configured helper cores and their state.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class TransportKind(Enum):
    """Transport implementation used to reach helper cores."""
    PROCESS = "Process"
    HTTPD = "HTTPD"

    @classmethod
    def parse(cls, value: Any) -> 'TransportKind':
        """
        Parse an implementation type name.

        Matching is case-insensitive. Raises ValueError for anything
        outside the closed set.
        """
        if isinstance(value, TransportKind):
            return value
        text = str(value).strip().lower()
        for kind in cls:
            if kind.value.lower() == text or kind.name.lower() == text:
                return kind
        raise ValueError(
            f"Unsupported implementation type: {value!r} "
            f"(expected one of {', '.join(k.value for k in cls)})")


class CoreStatus(Enum):
    """Lifecycle status of a helper core."""
    INITIALIZED = "initialized"
    HANDSHAKING = "handshaking"
    TRUSTED = "trusted"
    BUSY = "busy"
    UNRESPONSIVE = "unresponsive"
    OVERLOADED = "overloaded"
    CLOSED = "closed"

    @property
    def is_dispatchable(self) -> bool:
        """Whether automatic target selection may pick a core in this status."""
        return self in (CoreStatus.TRUSTED, CoreStatus.BUSY)


@dataclass(frozen=True)
class CoreConfig:
    """
    Static configuration of one helper core.

    Process cores carry the command used to launch them; HTTPD cores
    carry the host and port of their server.
    """

    core_id: int
    transport: TransportKind
    command: Tuple[str, ...] = ()
    host: Optional[str] = None
    port: Optional[int] = None

    def __post_init__(self) -> None:
        if self.core_id < 1:
            raise ValueError(f"Core id must be positive, got {self.core_id}")
        if self.transport is TransportKind.PROCESS and not self.command:
            raise ValueError(f"Process core {self.core_id} needs a launch command")
        if self.transport is TransportKind.HTTPD:
            if not self.host or self.port is None:
                raise ValueError(f"HTTPD core {self.core_id} needs host and port")
            if not (1 <= self.port <= 65535):
                raise ValueError(
                    f"Core {self.core_id} port must be between 1 and 65535, got {self.port}")

    @property
    def address(self) -> str:
        """Human readable transport address."""
        if self.transport is TransportKind.HTTPD:
            return f"{self.host}:{self.port}"
        return " ".join(self.command)

    @property
    def base_url(self) -> str:
        """Base URL of an HTTPD core."""
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'core_id': self.core_id,
            'transport': self.transport.value,
            'address': self.address,
        }


@dataclass
class CoreState:
    """Mutable runtime state of one helper core."""

    core_id: int
    status: CoreStatus = CoreStatus.INITIALIZED
    load: int = 0
    last_health_check: Optional[float] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    security_hold: bool = False
    status_changed_at: float = field(default_factory=time.time)

    def snapshot(self) -> 'CoreState':
        """Return a detached copy safe to hand to callers."""
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'core_id': self.core_id,
            'status': self.status.value,
            'load': self.load,
            'last_health_check': self.last_health_check,
            'consecutive_failures': self.consecutive_failures,
            'last_error': self.last_error,
            'security_hold': self.security_hold,
        }
