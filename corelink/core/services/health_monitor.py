"""
Periodic liveness tracking for helper cores.

Runs on a fixed interval independent of request traffic. Each round
probes every core concurrently: transport liveness for all of them plus
an application-level ping for trusted ones. Results are folded into the
CoreRegistry, which the dispatcher consults for target selection.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..domain.cores import CoreStatus
from ..exceptions import CorelinkError, HelperCrashError
from ..interfaces.lifecycle import IComponent
from ..interfaces.transport import ITransport
from .core_registry import CoreRegistry
from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)

HealthListener = Callable[[int, CoreStatus, CoreStatus], None]


class HealthMonitor(IComponent):
    """
    Background prober driving core status transitions.

    ``failure_threshold`` consecutive failed probes make a core
    UNRESPONSIVE; a single successful probe restores it. Reachable cores
    that were never trusted (and are not on security hold) get a handshake
    when ``auto_handshake`` is enabled.
    """

    def __init__(
        self,
        registry: CoreRegistry,
        transport: ITransport,
        dispatcher: Dispatcher,
        interval: float = 5.0,
        failure_threshold: int = 3,
        probe_timeout: float = 2.0,
        auto_handshake: bool = True
    ) -> None:
        if interval <= 0:
            raise ValueError("Health check interval must be positive")
        if failure_threshold < 1:
            raise ValueError("Failure threshold must be at least 1")
        self._registry = registry
        self._transport = transport
        self._dispatcher = dispatcher
        self._interval = interval
        self._failure_threshold = failure_threshold
        self._probe_timeout = probe_timeout
        self._auto_handshake = auto_handshake

        self._listeners: List[HealthListener] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._rounds = 0
        self._last_round: Dict[int, bool] = {}

    @property
    def name(self) -> str:
        return "HealthMonitor"

    def add_listener(self, listener: HealthListener) -> None:
        """Register a callback for status changes caused by probes."""
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Health monitor started (interval {self._interval}s, "
                    f"threshold {self._failure_threshold})")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    async def check_health(self) -> Dict[str, Any]:
        return {
            'healthy': self._running,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'rounds': self._rounds,
                'interval': self._interval,
                'failure_threshold': self._failure_threshold,
                'last_round': dict(self._last_round),
            }
        }

    async def run_once(self) -> Dict[int, bool]:
        """Probe every core once and apply the results."""
        core_ids = [
            core_id for core_id in self._registry.core_ids()
            if self._registry.get_state(core_id).status is not CoreStatus.CLOSED
        ]
        results = await asyncio.gather(*(self._probe(core_id) for core_id in core_ids))
        self._rounds += 1
        self._last_round = dict(zip(core_ids, results))

        if self._auto_handshake:
            for core_id, ok in self._last_round.items():
                if ok:
                    await self._maybe_handshake(core_id)
        return dict(self._last_round)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check round failed: {e}")
                await asyncio.sleep(self._interval)

    async def _probe(self, core_id: int) -> bool:
        # state is read and written in separate short sections; the probe
        # itself runs without any registry lock held
        trusted = self._dispatcher.is_trusted(core_id)
        error: Optional[str] = None
        try:
            ok = await asyncio.wait_for(self._transport.is_alive(core_id), self._probe_timeout)
            if not ok:
                error = "transport reports core not alive"
            elif trusted:
                await self._dispatcher.ping(core_id, self._probe_timeout)
        except asyncio.TimeoutError:
            ok, error = False, f"probe timed out after {self._probe_timeout}s"
        except CorelinkError as e:
            ok, error = False, str(e)

        old = self._registry.get_state(core_id).status
        new = self._registry.record_probe(
            core_id, ok, self._failure_threshold, trusted, error=error)

        if new is CoreStatus.UNRESPONSIVE and old is not CoreStatus.UNRESPONSIVE:
            crash = HelperCrashError(f"Core stopped answering health checks: {error}",
                                     core_id=core_id)
            logger.error(str(crash))
        elif old is CoreStatus.UNRESPONSIVE and new is not CoreStatus.UNRESPONSIVE:
            logger.info(f"Core {core_id} is responsive again ({new.value})")
        elif not ok:
            logger.debug(f"Health probe of core {core_id} failed: {error}")

        if old is not new:
            self._notify(core_id, old, new)
        return ok

    async def _maybe_handshake(self, core_id: int) -> None:
        state = self._registry.get_state(core_id)
        if state.status is not CoreStatus.INITIALIZED or state.security_hold:
            return
        try:
            await self._dispatcher.ensure_trust(core_id)
            logger.info(f"Established trust with core {core_id}")
        except CorelinkError as e:
            logger.warning(f"Automatic handshake with core {core_id} failed: {e}")

    def _notify(self, core_id: int, old: CoreStatus, new: CoreStatus) -> None:
        for listener in self._listeners:
            try:
                listener(core_id, old, new)
            except Exception as e:
                logger.error(f"Health listener error for core {core_id}: {e}")
