"""
Tests for the health monitor.
"""

import asyncio
from typing import List, Tuple

import pytest

from conftest import LoopbackTransport
from corelink.application.runtime import CorelinkRuntime
from corelink.core.domain.cores import CoreStatus
from corelink.core.exceptions import HelperCrashError
from corelink.core.services.health_monitor import HealthMonitor


@pytest.fixture
async def runtime(config, transport):
    rt = CorelinkRuntime(config, transport=transport)
    await rt.start()
    yield rt
    await rt.shutdown()


@pytest.fixture
def monitor(runtime: CorelinkRuntime, transport: LoopbackTransport) -> HealthMonitor:
    return HealthMonitor(
        runtime.registry, transport, runtime.dispatcher,
        interval=0.05, failure_threshold=2, probe_timeout=0.5)


class TestHealthMonitor:
    """Test cases for HealthMonitor probing."""

    async def test_healthy_round(self, monitor: HealthMonitor, runtime: CorelinkRuntime) -> None:
        assert await monitor.run_once() == {1: True, 2: True}
        state = runtime.registry.get_state(1)
        assert state.status is CoreStatus.TRUSTED
        assert state.last_health_check is not None

    async def test_dead_core_becomes_unresponsive(self, monitor: HealthMonitor,
                                                  runtime: CorelinkRuntime,
                                                  transport: LoopbackTransport) -> None:
        changes: List[Tuple[int, CoreStatus, CoreStatus]] = []
        monitor.add_listener(lambda core_id, old, new: changes.append((core_id, old, new)))
        transport.dead.add(2)

        assert (await monitor.run_once())[2] is False
        assert runtime.registry.get_state(2).status is CoreStatus.TRUSTED

        await monitor.run_once()
        assert runtime.registry.get_state(2).status is CoreStatus.UNRESPONSIVE
        assert changes == [(2, CoreStatus.TRUSTED, CoreStatus.UNRESPONSIVE)]
        assert runtime.registry.get_state(1).status is CoreStatus.TRUSTED

        with pytest.raises(HelperCrashError):
            await runtime.call("echo", b"", target=2)
        assert await runtime.call("echo", b"still up") == b"still up"

    async def test_recovered_core_is_eligible_again(self, monitor: HealthMonitor,
                                                    runtime: CorelinkRuntime,
                                                    transport: LoopbackTransport) -> None:
        transport.dead.add(1)
        await monitor.run_once()
        await monitor.run_once()
        assert runtime.registry.get_state(1).status is CoreStatus.UNRESPONSIVE

        transport.dead.discard(1)
        await monitor.run_once()
        assert runtime.registry.get_state(1).status is CoreStatus.TRUSTED
        assert await runtime.call("echo", b"back", target=1) == b"back"

    async def test_hanging_probe_times_out(self, monitor: HealthMonitor,
                                           transport: LoopbackTransport,
                                           monkeypatch: pytest.MonkeyPatch) -> None:
        async def hang(core_id: int) -> bool:
            await asyncio.sleep(5)
            return True

        monkeypatch.setattr(transport, "is_alive", hang)
        monitor = HealthMonitor(monitor._registry, transport, monitor._dispatcher,
                                interval=1.0, failure_threshold=1, probe_timeout=0.05)

        assert await monitor.run_once() == {1: False, 2: False}
        assert "timed out" in monitor._registry.get_state(1).last_error

    async def test_untrusted_core_gets_handshake(self, monitor: HealthMonitor,
                                                 runtime: CorelinkRuntime) -> None:
        runtime.trust_store.forget(2)
        runtime.registry.set_status(2, CoreStatus.INITIALIZED)

        await monitor.run_once()

        assert runtime.trust_store.is_trusted(2)
        assert runtime.registry.get_state(2).status is CoreStatus.TRUSTED

    async def test_held_core_is_not_handshaken(self, monitor: HealthMonitor,
                                               runtime: CorelinkRuntime) -> None:
        runtime.trust_store.forget(2)
        runtime.registry.set_status(2, CoreStatus.INITIALIZED)
        runtime.registry.set_security_hold(2, True)

        await monitor.run_once()

        assert not runtime.trust_store.is_trusted(2)
        assert runtime.registry.get_state(2).status is CoreStatus.INITIALIZED

    async def test_background_loop(self, monitor: HealthMonitor) -> None:
        await monitor.start()
        await asyncio.sleep(0.2)
        health = await monitor.check_health()
        await monitor.stop()

        assert health['healthy'] is True
        assert health['details']['rounds'] >= 2
        assert (await monitor.check_health())['status'] == 'stopped'

    async def test_invalid_settings(self, runtime: CorelinkRuntime,
                                    transport: LoopbackTransport) -> None:
        with pytest.raises(ValueError):
            HealthMonitor(runtime.registry, transport, runtime.dispatcher, interval=0)
        with pytest.raises(ValueError):
            HealthMonitor(runtime.registry, transport, runtime.dispatcher, failure_threshold=0)
