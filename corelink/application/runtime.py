"""
Main-core runtime context.

CorelinkRuntime is built explicitly from an ApplicationConfig, started,
used and torn down; there is no module-level state. Components start in
a fixed order (transport, dispatcher, health monitor) and stop in
reverse.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from ..core.domain.cores import CoreStatus, TransportKind
from ..core.domain.requests import Response
from ..core.domain.trust import SessionKey
from ..core.exceptions import CorelinkError
from ..core.interfaces.lifecycle import IComponent
from ..core.interfaces.transport import ITransport
from ..core.services.core_registry import CoreRegistry
from ..core.services.dispatcher import Dispatcher
from ..core.services.handshake import HandshakeProtocol
from ..core.services.health_monitor import HealthMonitor
from ..core.services.operations import OperationRegistry
from ..core.services.trust_store import TrustStore
from ..infrastructure.config.models import ApplicationConfig
from ..infrastructure.security.crypto import CryptoProvider
from ..infrastructure.security.identity import MAIN_CORE_ID, NodeIdentity
from ..infrastructure.transports import HttpTransport, ProcessTransport

logger = logging.getLogger(__name__)


class CorelinkRuntime:
    """
    Main-core runtime: registry, trust, transport, dispatcher and health.

    Args:
        config: Validated application configuration
        transport: Transport to use instead of the one the configuration
            selects (tests pass an in-memory transport here)
    """

    def __init__(self, config: ApplicationConfig,
                 transport: Optional[ITransport] = None) -> None:
        self._config = config
        self._transport_override = transport
        self._configured = False
        self._running = False
        self._started_components: List[IComponent] = []

        self._identity: Optional[NodeIdentity] = None
        self._crypto: Optional[CryptoProvider] = None
        self._trust_store: Optional[TrustStore] = None
        self._registry: Optional[CoreRegistry] = None
        self._transport: Optional[ITransport] = None
        self._dispatcher: Optional[Dispatcher] = None
        self._monitor: Optional[HealthMonitor] = None

    @property
    def config(self) -> ApplicationConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def registry(self) -> CoreRegistry:
        return self._require(self._registry)

    @property
    def trust_store(self) -> TrustStore:
        return self._require(self._trust_store)

    @property
    def transport(self) -> ITransport:
        return self._require(self._transport)

    @property
    def dispatcher(self) -> Dispatcher:
        return self._require(self._dispatcher)

    @property
    def health_monitor(self) -> Optional[HealthMonitor]:
        return self._monitor

    def configure(self) -> None:
        """
        Build every component from the configuration.

        Raises:
            ConfigError: If the runtime configuration is invalid
        """
        if self._configured:
            return

        security = self._config.security
        dispatch = self._config.dispatch
        health = self._config.health

        self._registry = CoreRegistry(load_ceiling=health.load_ceiling)
        cores = self._registry.configure(
            self._config.runtime.implementation, self._config.runtime.options)

        self._identity = NodeIdentity.create(MAIN_CORE_ID, security.effective_secret)
        self._crypto = CryptoProvider()
        self._trust_store = TrustStore(
            nonce_history_size=security.nonce_history_size,
            key_grace_period=security.key_grace_period,
        )
        handshake = HandshakeProtocol(
            self._identity, self._crypto, self._trust_store,
            session_key_max_age=security.session_key_max_age,
            session_key_max_uses=security.session_key_max_uses,
        )

        self._transport = self._transport_override or self._create_transport()
        self._transport.add_cores(cores)

        self._dispatcher = Dispatcher(
            handshake, self._crypto, self._trust_store,
            registry=self._registry,
            transport=self._transport,
            operations=OperationRegistry(),
            request_timeout=dispatch.request_timeout,
            retry_attempts=dispatch.retry_attempts,
            retry_delay=dispatch.retry_delay,
            retention_window=dispatch.retention_window,
            handshake_timeout=dispatch.handshake_timeout,
        )

        if health.enabled:
            self._monitor = HealthMonitor(
                self._registry, self._transport, self._dispatcher,
                interval=health.interval,
                failure_threshold=health.failure_threshold,
                probe_timeout=health.probe_timeout,
                auto_handshake=health.auto_handshake,
            )

        if security.trust_policy == "tofu":
            logger.warning(
                "Trust policy is 'tofu': helper identities are accepted on first contact")
        self._configured = True
        logger.info(f"Runtime configured with {len(cores)} "
                    f"{self._config.runtime.implementation} core(s)")

    async def start(self) -> None:
        """Start components in order and establish trust with every core."""
        if self._running:
            return
        self.configure()

        logger.info("Starting corelink runtime...")
        components: List[IComponent] = [self.transport, self.dispatcher]
        for component in components:
            try:
                await component.start()
                self._started_components.append(component)
                logger.info(f"Started component: {component.name}")
            except Exception as e:
                logger.error(f"Failed to start component {component.name}: {e}")
                await self._stop_started_components()
                raise

        self._running = True
        await self._establish_trust()

        if self._monitor is not None:
            await self._monitor.start()
            self._started_components.append(self._monitor)
        logger.info("Corelink runtime started")

    async def shutdown(self) -> None:
        """Stop components in reverse order and drop all trust state."""
        if not self._running and not self._started_components:
            return

        logger.info("Shutting down corelink runtime...")
        self._running = False
        await self._stop_started_components()
        if self._registry is not None:
            self._registry.close_all()
        if self._trust_store is not None:
            self._trust_store.clear()
        logger.info("Corelink runtime shut down")

    async def __aenter__(self) -> 'CorelinkRuntime':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def send(self, operation: str, payload: bytes = b"",
                   target: Optional[int] = None) -> str:
        return await self.dispatcher.send(target, operation, payload)

    async def receive(self, request_id: str, timeout: Optional[float] = None) -> Response:
        return await self.dispatcher.receive(request_id, timeout)

    async def call(self, operation: str, payload: bytes = b"", target: Optional[int] = None,
                   timeout: Optional[float] = None) -> bytes:
        return await self.dispatcher.call(target, operation, payload, timeout)

    async def restart_core(self, core_id: int) -> None:
        """
        Restart a helper and establish a fresh trust relationship with it.

        The old trust record is forgotten first: under ``tofu`` a restarted
        helper presents a new fingerprint.
        """
        self.registry.get_config(core_id)
        logger.info(f"Restarting core {core_id}")
        await self.transport.restart(core_id)
        self.trust_store.forget(core_id)
        self.registry.set_security_hold(core_id, False)
        self.registry.set_status(core_id, CoreStatus.INITIALIZED)
        await self.dispatcher.ensure_trust(core_id)

    async def rehandshake(self, core_id: int) -> None:
        """Clear a security hold and re-run the handshake with a core."""
        await self.dispatcher.rehandshake(core_id)

    async def rotate_keys(self, core_id: Optional[int] = None) -> Dict[int, SessionKey]:
        """Rotate the session key with one core, or with every trusted core."""
        core_ids = [core_id] if core_id is not None else [
            cid for cid in self.registry.core_ids() if self.dispatcher.is_trusted(cid)
        ]
        rotated = {}
        for cid in core_ids:
            rotated[cid] = await self.dispatcher.rotate_keys(cid)
        return rotated

    async def status(self) -> Dict[str, Any]:
        """Aggregate registry, trust and component health."""
        components = {}
        for component in self._started_components:
            try:
                components[component.name] = await component.check_health()
            except Exception as e:
                components[component.name] = {'healthy': False, 'status': 'error',
                                               'details': {'error': str(e)}}
        return {
            'running': self._running,
            'implementation': self._config.runtime.implementation,
            'trust_policy': self._config.security.trust_policy,
            'cores': self._registry.snapshot() if self._registry else [],
            'trust': self._trust_store.snapshot() if self._trust_store else [],
            'components': components,
        }

    def _create_transport(self) -> ITransport:
        env = self._worker_environment()
        if self._config.runtime.kind is TransportKind.PROCESS:
            return ProcessTransport(env=env)
        server = self._config.server
        return HttpTransport(
            env=env,
            poll_wait=server.poll_wait,
            request_timeout=self._config.dispatch.request_timeout,
            startup_timeout=server.startup_timeout,
        )

    def _worker_environment(self) -> Dict[str, str]:
        """Environment for spawned helpers, carrying the security settings."""
        env = dict(os.environ)
        security = self._config.security
        env['CORELINK_TRUST_POLICY'] = security.trust_policy
        if security.effective_secret:
            env['CORELINK_BOOTSTRAP_SECRET'] = security.effective_secret
        else:
            env.pop('CORELINK_BOOTSTRAP_SECRET', None)
        env['CORELINK_LOG_LEVEL'] = self._config.logging.level
        if self._config.config_file_path:
            env['CORELINK_CONFIG'] = os.path.abspath(self._config.config_file_path)
        operation_modules = self._config.runtime.operation_modules
        if operation_modules:
            env['CORELINK_OPERATION_MODULES'] = ",".join(operation_modules)
        return env

    async def _establish_trust(self) -> None:
        core_ids = self.registry.core_ids()
        results = await asyncio.gather(
            *(self.dispatcher.ensure_trust(core_id) for core_id in core_ids),
            return_exceptions=True)
        for core_id, result in zip(core_ids, results):
            if isinstance(result, CorelinkError):
                logger.error(f"Initial handshake with core {core_id} failed: {result}")
            elif isinstance(result, BaseException):
                raise result

    async def _stop_started_components(self) -> None:
        for component in reversed(self._started_components):
            try:
                await component.stop()
                logger.info(f"Stopped component: {component.name}")
            except Exception as e:
                logger.error(f"Error stopping component {component.name}: {e}")
        self._started_components.clear()

    @staticmethod
    def _require(component: Any) -> Any:
        if component is None:
            raise RuntimeError("Runtime is not configured; call configure() first")
        return component
