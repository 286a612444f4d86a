"""
Base transport implementation.

Holds what Process and HTTP transports share: the registered cores,
metrics, lifecycle flags and helper-process management.
"""

import asyncio
import logging
import time
from abc import ABC
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from ...core.domain.cores import CoreConfig
from ...core.exceptions import TransportError, UnknownCoreError
from ...core.interfaces.transport import ITransport

logger = logging.getLogger(__name__)

TERMINATE_TIMEOUT = 5.0


@dataclass
class TransportMetrics:
    """Transport traffic counters."""
    frames_sent: int = 0
    frames_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    send_errors: int = 0
    receive_errors: int = 0
    restarts: int = 0
    last_error: Optional[str] = None
    last_activity: Optional[float] = None

    def record_sent(self, size: int) -> None:
        self.frames_sent += 1
        self.bytes_sent += size
        self.last_activity = time.time()

    def record_received(self, size: int) -> None:
        self.frames_received += 1
        self.bytes_received += size
        self.last_activity = time.time()

    def record_error(self, error: str, sending: bool) -> None:
        if sending:
            self.send_errors += 1
        else:
            self.receive_errors += 1
        self.last_error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'frames_sent': self.frames_sent,
            'frames_received': self.frames_received,
            'bytes_sent': self.bytes_sent,
            'bytes_received': self.bytes_received,
            'send_errors': self.send_errors,
            'receive_errors': self.receive_errors,
            'restarts': self.restarts,
            'last_error': self.last_error,
        }


class BaseTransport(ITransport, ABC):
    """
    Common bookkeeping for transports.

    Args:
        env: Environment for spawned helper processes (None inherits ours)
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._cores: Dict[int, CoreConfig] = {}
        self._env = dict(env) if env is not None else None
        self._metrics = TransportMetrics()
        self._running = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def add_cores(self, cores: Iterable[CoreConfig]) -> None:
        for core in cores:
            if core.transport is not self.kind:
                raise ValueError(
                    f"Core {core.core_id} uses {core.transport.value}, "
                    f"not {self.kind.value}")
            self._cores[core.core_id] = core

    def core(self, core_id: int) -> CoreConfig:
        try:
            return self._cores[core_id]
        except KeyError:
            raise UnknownCoreError("Core is not registered with the transport", core_id=core_id)

    def get_metrics(self) -> Dict[str, Any]:
        return self._metrics.to_dict()

    async def check_health(self) -> Dict[str, Any]:
        alive = {core_id: await self.is_alive(core_id) for core_id in sorted(self._cores)}
        return {
            'healthy': self._running and all(alive.values()),
            'status': 'running' if self._running else 'stopped',
            'details': {
                'kind': self.kind.value,
                'cores': alive,
                **self._metrics.to_dict(),
            }
        }

    async def _spawn(self, core: CoreConfig, pipes: bool) -> asyncio.subprocess.Process:
        """
        Launch a helper process for a core.

        With ``pipes`` the child's stdin/stdout carry frames; otherwise they
        are left attached to /dev/null and our own terminal.
        """
        if not core.command:
            raise TransportError("Core has no launch command", core_id=core.core_id)

        stdio = asyncio.subprocess.PIPE if pipes else asyncio.subprocess.DEVNULL
        try:
            process = await asyncio.create_subprocess_exec(
                *core.command,
                stdin=stdio,
                stdout=stdio,
                env=self._env,
            )
        except OSError as e:
            raise TransportError(f"Failed to launch helper: {e}", core_id=core.core_id)

        logger.info(f"Launched helper for core {core.core_id} (pid {process.pid})")
        return process

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, core_id: int) -> None:
        """Stop a helper process, escalating from terminate to kill."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), TERMINATE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Helper for core {core_id} ignored terminate, killing")
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        logger.info(f"Helper for core {core_id} exited with code {process.returncode}")
