"""
Shared fixtures: test configurations and an in-memory transport that
connects a main-core runtime to real HelperNode instances.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set

import pytest

from corelink.application.helper import HelperNode
from corelink.core.domain.cores import CoreConfig, TransportKind
from corelink.core.exceptions import CorelinkError, UnknownCoreError
from corelink.core.interfaces.transport import ITransport
from corelink.infrastructure.config.models import (
    ApplicationConfig, DispatchConfig, HealthConfig, RuntimeConfig, SecurityConfig
)


def make_config(cores: int = 2, secret: Optional[str] = None, **sections: Any) -> ApplicationConfig:
    """Build a fast-timing configuration for in-process tests."""
    security = SecurityConfig(trust_policy="pre_shared", bootstrap_secret=secret) \
        if secret else SecurityConfig()
    return ApplicationConfig(
        runtime=RuntimeConfig(implementation="Process", options={'NumberOfCores': cores}),
        security=sections.pop('security', security),
        dispatch=sections.pop('dispatch', DispatchConfig(
            request_timeout=2.0, retry_attempts=3, retry_delay=0.01, handshake_timeout=2.0)),
        health=sections.pop('health', HealthConfig(enabled=False)),
        **sections
    )


class LoopbackTransport(ITransport):
    """
    Transport delivering frames straight to HelperNode objects.

    Each frame is handled in its own task so slow operations answer late,
    as they would over a real channel.
    """

    def __init__(self, helpers: Dict[int, HelperNode]) -> None:
        self.helpers = helpers
        self.sent: Dict[int, List[bytes]] = {}
        self.dead: Set[int] = set()
        self.send_failures: Dict[int, List[CorelinkError]] = {}
        self.lost_replies: Set[str] = set()
        self.restarts: List[int] = []
        self._cores: Dict[int, CoreConfig] = {}
        self._queues: Dict[int, asyncio.Queue] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def name(self) -> str:
        return "LoopbackTransport"

    @property
    def kind(self) -> TransportKind:
        return TransportKind.PROCESS

    def add_cores(self, cores: Iterable[CoreConfig]) -> None:
        for core in cores:
            self._cores[core.core_id] = core

    async def start(self) -> None:
        for core_id in self._cores:
            self._queues[core_id] = asyncio.Queue()
            helper = self.helpers.get(core_id)
            if helper is not None:
                await helper.start()
        self._running = True

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for helper in self.helpers.values():
            await helper.stop()

    async def check_health(self) -> Dict[str, Any]:
        return {'healthy': self._running, 'status': 'running', 'details': {}}

    async def send(self, core_id: int, data: bytes) -> None:
        if core_id not in self._cores:
            raise UnknownCoreError("Core is not registered", core_id=core_id)
        failures = self.send_failures.get(core_id)
        if failures:
            raise failures.pop(0)
        self.sent.setdefault(core_id, []).append(data)
        task = asyncio.create_task(self._deliver(core_id, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def receive(self, core_id: int) -> bytes:
        return await self._queues[core_id].get()

    async def is_alive(self, core_id: int) -> bool:
        return core_id not in self.dead

    async def restart(self, core_id: int) -> None:
        self.restarts.append(core_id)

    def frames_of_type(self, core_id: int, message_type: str) -> List[bytes]:
        return [frame for frame in self.sent.get(core_id, [])
                if f'"type":"{message_type}"'.encode() in frame]

    async def _deliver(self, core_id: int, data: bytes) -> None:
        if core_id in self.dead:
            return
        reply = await self.helpers[core_id].handle_frame(data)
        if reply is None or core_id in self.dead:
            return
        if any(f'"type":"{lost}"'.encode() in reply for lost in self.lost_replies):
            return
        await self._queues[core_id].put(reply)


@pytest.fixture
def config() -> ApplicationConfig:
    return make_config()


@pytest.fixture
def helpers(config: ApplicationConfig) -> Dict[int, HelperNode]:
    return {core_id: HelperNode(core_id, config) for core_id in (1, 2)}


@pytest.fixture
def transport(helpers: Dict[int, HelperNode]) -> LoopbackTransport:
    return LoopbackTransport(helpers)
