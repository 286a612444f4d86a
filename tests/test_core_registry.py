"""
Tests for the core registry: configuration, load tracking and selection.
"""

from typing import List, Tuple

import pytest

from corelink.core.domain.cores import CoreStatus, TransportKind
from corelink.core.exceptions import ConfigError, NoCoreAvailableError, UnknownCoreError
from corelink.core.services.core_registry import CoreRegistry


def trusted_registry(count: int, **kwargs) -> CoreRegistry:
    registry = CoreRegistry(**kwargs)
    registry.configure("Process", {'NumberOfCores': count})
    for core_id in registry.core_ids():
        registry.set_status(core_id, CoreStatus.TRUSTED)
    return registry


class TestConfigure:
    """Test cases for CoreRegistry.configure."""

    def test_process_cores(self) -> None:
        registry = CoreRegistry()
        cores = registry.configure("Process", {'NumberOfCores': 3})

        assert [core.core_id for core in cores] == [1, 2, 3]
        assert registry.implementation is TransportKind.PROCESS
        assert "--core-id" in cores[1].command
        assert cores[1].command[cores[1].command.index("--core-id") + 1] == "2"
        assert all(registry.get_state(c).status is CoreStatus.INITIALIZED for c in (1, 2, 3))

    def test_default_core_count(self) -> None:
        registry = CoreRegistry()
        assert len(registry.configure("process")) == 2

    def test_httpd_cores_get_consecutive_ports(self) -> None:
        registry = CoreRegistry()
        cores = registry.configure("HTTPD", {'NumberOfCores': 2, 'Port': 9100, 'Host': '10.0.0.5'})

        assert [core.port for core in cores] == [9100, 9101]
        assert cores[0].base_url == "http://10.0.0.5:9100"
        assert "--port" in cores[1].command

    def test_httpd_without_spawning(self) -> None:
        registry = CoreRegistry()
        cores = registry.configure("HTTPD", {'NumberOfCores': 1, 'SpawnWorkers': 'false'})
        assert cores[0].command == ()

    def test_worker_args_are_appended(self) -> None:
        registry = CoreRegistry()
        cores = registry.configure("Process", {
            'NumberOfCores': 1, 'WorkerExecutable': '/opt/py', 'WorkerArgs': ['--config', 'x.yaml']})
        assert cores[0].command[0] == '/opt/py'
        assert cores[0].command[-2:] == ('--config', 'x.yaml')

    @pytest.mark.parametrize("implementation,options", [
        ("Socket", {}),
        ("Process", {'NumberOfCores': 0}),
        ("Process", {'NumberOfCores': 'many'}),
        ("HTTPD", {'Port': 70000}),
        ("HTTPD", {'SpawnWorkers': 'maybe'}),
    ])
    def test_invalid_configuration(self, implementation: str, options: dict) -> None:
        registry = CoreRegistry()
        with pytest.raises(ConfigError):
            registry.configure(implementation, options)

    def test_unknown_core(self) -> None:
        registry = trusted_registry(1)
        with pytest.raises(UnknownCoreError):
            registry.get_state(9)
        with pytest.raises(UnknownCoreError):
            registry.get_config(9)


class TestLoadBalancing:
    """Test cases for load tracking and least-loaded selection."""

    def test_least_loaded_core(self) -> None:
        registry = trusted_registry(3)
        for core_id, load in ((1, 3), (2, 1), (3, 1)):
            for _ in range(load):
                registry.increment_load(core_id)

        assert registry.least_loaded_core() == 2

    def test_ties_go_to_lowest_core(self) -> None:
        registry = trusted_registry(3)
        assert registry.least_loaded_core() == 1

    def test_load_changes_status(self) -> None:
        registry = trusted_registry(1)
        registry.increment_load(1)
        assert registry.get_state(1).status is CoreStatus.BUSY
        registry.decrement_load(1)
        assert registry.get_state(1).status is CoreStatus.TRUSTED

    def test_load_never_negative(self) -> None:
        registry = trusted_registry(1)
        assert registry.decrement_load(1) == 0
        assert registry.get_state(1).load == 0

    def test_load_ceiling_marks_overloaded(self) -> None:
        registry = trusted_registry(2, load_ceiling=1)
        registry.increment_load(1)
        registry.increment_load(1)
        assert registry.get_state(1).status is CoreStatus.OVERLOADED
        assert registry.least_loaded_core() == 2

        registry.decrement_load(1)
        assert registry.get_state(1).status is CoreStatus.BUSY

    def test_untrusted_cores_not_selected(self) -> None:
        registry = CoreRegistry()
        registry.configure("Process", {'NumberOfCores': 2})
        with pytest.raises(NoCoreAvailableError):
            registry.least_loaded_core()

    def test_predicate_filters(self) -> None:
        registry = trusted_registry(2)
        assert registry.least_loaded_core(lambda state: state.core_id != 1) == 2

    def test_snapshots_are_detached(self) -> None:
        registry = trusted_registry(1)
        state = registry.get_state(1)
        state.load = 42
        assert registry.get_state(1).load == 0


class TestHealthProbes:
    """Test cases for probe folding."""

    def setup_method(self) -> None:
        self.registry = trusted_registry(2)
        self.changes: List[Tuple[int, CoreStatus, CoreStatus]] = []
        self.registry.add_listener(lambda core_id, old, new: self.changes.append((core_id, old, new)))

    def test_threshold_failures_make_unresponsive(self) -> None:
        for _ in range(2):
            self.registry.record_probe(1, False, 3, trusted=True, error="timeout")
        assert self.registry.get_state(1).status is CoreStatus.TRUSTED

        status = self.registry.record_probe(1, False, 3, trusted=True, error="timeout")
        assert status is CoreStatus.UNRESPONSIVE
        assert self.registry.get_state(1).last_error == "timeout"
        assert self.registry.least_loaded_core() == 2
        assert (1, CoreStatus.TRUSTED, CoreStatus.UNRESPONSIVE) in self.changes

    def test_success_restores(self) -> None:
        for _ in range(3):
            self.registry.record_probe(1, False, 3, trusted=True)
        status = self.registry.record_probe(1, True, 3, trusted=True)

        assert status is CoreStatus.TRUSTED
        assert self.registry.get_state(1).consecutive_failures == 0
        assert self.registry.least_loaded_core() == 1

    def test_recovery_without_trust(self) -> None:
        for _ in range(3):
            self.registry.record_probe(1, False, 3, trusted=True)
        assert self.registry.record_probe(1, True, 3, trusted=False) is CoreStatus.INITIALIZED

    def test_success_resets_failure_count(self) -> None:
        self.registry.record_probe(1, False, 3, trusted=True)
        self.registry.record_probe(1, False, 3, trusted=True)
        self.registry.record_probe(1, True, 3, trusted=True)
        self.registry.record_probe(1, False, 3, trusted=True)
        assert self.registry.get_state(1).status is CoreStatus.TRUSTED

    def test_closed_cores_ignore_probes(self) -> None:
        self.registry.close_all()
        assert self.registry.record_probe(1, True, 3, trusted=True) is CoreStatus.CLOSED

    def test_listener_errors_are_contained(self) -> None:
        def broken(core_id: int, old: CoreStatus, new: CoreStatus) -> None:
            raise RuntimeError("listener bug")

        self.registry.add_listener(broken)
        self.registry.increment_load(1)
        assert self.registry.get_state(1).status is CoreStatus.BUSY

    def test_snapshot(self) -> None:
        snapshot = self.registry.snapshot()
        assert snapshot[0]['core_id'] == 1
        assert snapshot[0]['status'] == 'trusted'
        assert snapshot[0]['transport'] == 'Process'
