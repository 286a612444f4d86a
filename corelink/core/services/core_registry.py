"""
Registry of configured helper cores, their status and load.
"""

import logging
import sys
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..domain.cores import CoreConfig, CoreState, CoreStatus, TransportKind
from ..exceptions import ConfigError, NoCoreAvailableError, UnknownCoreError

logger = logging.getLogger(__name__)

DEFAULT_NUMBER_OF_CORES = 2
DEFAULT_PORT = 8080
DEFAULT_HOST = "127.0.0.1"

StatusListener = Callable[[int, CoreStatus, CoreStatus], None]


class CoreRegistry:
    """
    Tracks configured cores, their status, load and last-seen health.

    Each entry is guarded by its own lock; callers only ever receive
    snapshots of CoreState, never the live object.
    """

    def __init__(self, load_ceiling: Optional[int] = None) -> None:
        self._configs: Dict[int, CoreConfig] = {}
        self._states: Dict[int, CoreState] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._load_ceiling = load_ceiling
        self._listeners: List[StatusListener] = []
        self._implementation: Optional[TransportKind] = None

    @property
    def implementation(self) -> Optional[TransportKind]:
        return self._implementation

    @property
    def load_ceiling(self) -> Optional[int]:
        return self._load_ceiling

    def configure(self, implementation: Any, options: Optional[Dict[str, Any]] = None) -> List[CoreConfig]:
        """
        Validate the runtime configuration and register one entry per core.

        Args:
            implementation: "Process" or "HTTPD"
            options: Key/value options (NumberOfCores, Port, Host,
                SpawnWorkers, WorkerExecutable, WorkerArgs)

        Returns:
            The configured cores, ordered by core number

        Raises:
            ConfigError: On an unknown implementation type or invalid option
        """
        try:
            kind = TransportKind.parse(implementation)
        except ValueError as e:
            raise ConfigError(str(e))

        options = dict(options or {})
        count = _int_option(options, 'NumberOfCores', DEFAULT_NUMBER_OF_CORES)
        if count < 1:
            raise ConfigError(f"NumberOfCores must be at least 1, got {count}")

        executable = str(options.get('WorkerExecutable') or sys.executable)
        extra_args = [str(arg) for arg in options.get('WorkerArgs') or []]

        configs: List[CoreConfig] = []
        try:
            if kind is TransportKind.PROCESS:
                for core_id in range(1, count + 1):
                    command = (
                        executable, '-m', 'corelink.main', 'worker',
                        '--core-id', str(core_id), '--transport', 'process',
                        *extra_args,
                    )
                    configs.append(CoreConfig(core_id=core_id, transport=kind, command=command))
            else:
                base_port = _int_option(options, 'Port', DEFAULT_PORT)
                host = str(options.get('Host') or DEFAULT_HOST)
                spawn = _bool_option(options, 'SpawnWorkers', True)
                for core_id in range(1, count + 1):
                    port = base_port + core_id - 1
                    launch: Tuple[str, ...] = ()
                    if spawn:
                        launch = (
                            executable, '-m', 'corelink.main', 'worker',
                            '--core-id', str(core_id), '--transport', 'http',
                            '--host', host, '--port', str(port),
                            *extra_args,
                        )
                    configs.append(CoreConfig(
                        core_id=core_id, transport=kind, command=launch, host=host, port=port))
        except ValueError as e:
            raise ConfigError(f"Invalid core configuration: {e}")

        self._configs.clear()
        self._states.clear()
        self._locks.clear()
        for core in configs:
            self._configs[core.core_id] = core
            self._states[core.core_id] = CoreState(core_id=core.core_id)
            self._locks[core.core_id] = threading.Lock()
        self._implementation = kind

        logger.info(f"Configured {count} {kind.value} core(s)")
        return configs

    def add_listener(self, listener: StatusListener) -> None:
        """Register a callback invoked as (core_id, old, new) on status changes."""
        self._listeners.append(listener)

    def core_ids(self) -> List[int]:
        return sorted(self._configs)

    def cores(self) -> List[CoreConfig]:
        return [self._configs[core_id] for core_id in self.core_ids()]

    def get_config(self, core_id: int) -> CoreConfig:
        try:
            return self._configs[core_id]
        except KeyError:
            raise UnknownCoreError("Core is not configured", core_id=core_id)

    def get_state(self, core_id: int) -> CoreState:
        with self._lock(core_id):
            return self._states[core_id].snapshot()

    def set_status(self, core_id: int, status: CoreStatus,
                   error: Optional[str] = None) -> CoreStatus:
        """
        Set a core's status, returning the previous one.

        TRUSTED is refined to BUSY or OVERLOADED according to current load.
        """
        with self._lock(core_id):
            state = self._states[core_id]
            old = self._apply_status(state, status)
            if status is CoreStatus.TRUSTED:
                status = self._status_for_load(state)
                self._apply_status(state, status)
            if error is not None:
                state.last_error = error
        self._notify(core_id, old, status)
        return old

    def set_security_hold(self, core_id: int, held: bool, error: Optional[str] = None) -> None:
        """Mark a core as needing an explicit re-handshake."""
        with self._lock(core_id):
            state = self._states[core_id]
            state.security_hold = held
            if error is not None:
                state.last_error = error

    def increment_load(self, core_id: int) -> int:
        """Count one more in-flight request, returning the new load."""
        with self._lock(core_id):
            state = self._states[core_id]
            state.load += 1
            old = state.status
            new = self._status_for_load(state)
            self._apply_status(state, new)
            load = state.load
        self._notify(core_id, old, new)
        return load

    def decrement_load(self, core_id: int) -> int:
        """Release one in-flight slot, returning the new load."""
        with self._lock(core_id):
            state = self._states[core_id]
            if state.load == 0:
                logger.warning(f"Load decrement below zero ignored for core {core_id}")
                return 0
            state.load -= 1
            old = state.status
            new = self._status_for_load(state)
            self._apply_status(state, new)
            load = state.load
        self._notify(core_id, old, new)
        return load

    def record_probe(self, core_id: int, ok: bool, failure_threshold: int,
                     trusted: bool, error: Optional[str] = None) -> CoreStatus:
        """
        Fold one health probe result into a core's state.

        ``failure_threshold`` consecutive failures make the core
        UNRESPONSIVE; one success makes it eligible again.
        """
        with self._lock(core_id):
            state = self._states[core_id]
            state.last_health_check = time.time()
            old = state.status
            new = old

            if old is CoreStatus.CLOSED:
                return old

            if ok:
                state.consecutive_failures = 0
                if old is CoreStatus.UNRESPONSIVE:
                    new = CoreStatus.TRUSTED if trusted else CoreStatus.INITIALIZED
                    self._apply_status(state, new)
                    new = self._status_for_load(state)
                elif old in (CoreStatus.TRUSTED, CoreStatus.BUSY, CoreStatus.OVERLOADED):
                    new = self._status_for_load(state) if trusted else CoreStatus.INITIALIZED
                self._apply_status(state, new)
            else:
                state.consecutive_failures += 1
                if error is not None:
                    state.last_error = error
                if (state.consecutive_failures >= failure_threshold
                        and old is not CoreStatus.UNRESPONSIVE):
                    new = CoreStatus.UNRESPONSIVE
                    self._apply_status(state, new)

        self._notify(core_id, old, new)
        return new

    def least_loaded_core(self, predicate: Optional[Callable[[CoreState], bool]] = None) -> int:
        """
        Pick the dispatchable core with the lowest load.

        Ties go to the lowest core number.

        Raises:
            NoCoreAvailableError: If no core qualifies
        """
        best: Optional[CoreState] = None
        for core_id in self.core_ids():
            state = self.get_state(core_id)
            if not state.status.is_dispatchable:
                continue
            if predicate is not None and not predicate(state):
                continue
            if best is None or state.load < best.load:
                best = state

        if best is None:
            raise NoCoreAvailableError("No trusted, responsive core is available")
        return best.core_id

    def close_all(self) -> None:
        for core_id in self.core_ids():
            self.set_status(core_id, CoreStatus.CLOSED)

    def snapshot(self) -> List[Dict[str, Any]]:
        result = []
        for core in self.cores():
            info = self.get_state(core.core_id).to_dict()
            info.update(core.to_dict())
            result.append(info)
        return result

    def _lock(self, core_id: int) -> threading.Lock:
        try:
            return self._locks[core_id]
        except KeyError:
            raise UnknownCoreError("Core is not configured", core_id=core_id)

    def _status_for_load(self, state: CoreState) -> CoreStatus:
        """Status implied by load for a core that is otherwise healthy."""
        if state.status not in (CoreStatus.TRUSTED, CoreStatus.BUSY, CoreStatus.OVERLOADED):
            return state.status
        if self._load_ceiling is not None and state.load > self._load_ceiling:
            return CoreStatus.OVERLOADED
        return CoreStatus.BUSY if state.load > 0 else CoreStatus.TRUSTED

    @staticmethod
    def _apply_status(state: CoreState, status: CoreStatus) -> CoreStatus:
        old = state.status
        if old is not status:
            state.status = status
            state.status_changed_at = time.time()
        return old

    def _notify(self, core_id: int, old: CoreStatus, new: CoreStatus) -> None:
        if old is new:
            return
        logger.debug(f"Core {core_id} status changed: {old.value} -> {new.value}")
        for listener in self._listeners:
            try:
                listener(core_id, old, new)
            except Exception as e:
                logger.error(f"Status listener error for core {core_id}: {e}")


def _int_option(options: Dict[str, Any], key: str, default: int) -> int:
    value = options.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Option {key} must be an integer, got {value!r}")


def _bool_option(options: Dict[str, Any], key: str, default: bool) -> bool:
    value = options.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off'):
        return False
    raise ConfigError(f"Option {key} must be a boolean, got {value!r}")
