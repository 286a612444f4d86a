"""
Helper-side runtime.

A HelperNode answers the main core: it owns the helper's identity, trust
store, handshake responder, operation registry and dispatcher, and is
served either over stdin/stdout frames (Process transport) or through the
FastAPI app (HTTP transport).
"""

import asyncio
import logging
import sys
from typing import Any, Dict, Optional, Set

from ..core.exceptions import MessageFormatError, TransportError
from ..core.services.dispatcher import Dispatcher
from ..core.services.handshake import HandshakeProtocol
from ..core.services.operations import OperationRegistry
from ..core.services.trust_store import TrustStore
from ..infrastructure.config.models import ApplicationConfig
from ..infrastructure.security.crypto import CryptoProvider
from ..infrastructure.security.identity import MAIN_CORE_ID, NodeIdentity
from ..infrastructure.transports.framing import read_frame, write_frame

logger = logging.getLogger(__name__)


class HelperNode:
    """One helper core's runtime context."""

    def __init__(self, core_id: int, config: ApplicationConfig,
                 operations: Optional[OperationRegistry] = None) -> None:
        if core_id == MAIN_CORE_ID:
            raise ValueError(f"Core id {MAIN_CORE_ID} is reserved for the main core")

        security = config.security
        self._config = config
        self._identity = NodeIdentity.create(core_id, security.effective_secret)
        self._crypto = CryptoProvider()
        self._trust_store = TrustStore(
            nonce_history_size=security.nonce_history_size,
            key_grace_period=security.key_grace_period,
        )
        self._handshake = HandshakeProtocol(
            self._identity, self._crypto, self._trust_store,
            session_key_max_age=security.session_key_max_age,
            session_key_max_uses=security.session_key_max_uses,
        )
        if operations is None:
            operations = OperationRegistry()
            operations.load_modules(config.runtime.operation_modules)
        self._dispatcher = Dispatcher(
            self._handshake, self._crypto, self._trust_store,
            operations=operations,
            retention_window=config.dispatch.retention_window,
        )

        self._outbox: Optional[asyncio.Queue] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def core_id(self) -> int:
        return self._identity.core_id

    @property
    def identity(self) -> NodeIdentity:
        return self._identity

    @property
    def trust_store(self) -> TrustStore:
        return self._trust_store

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._outbox = asyncio.Queue()
        await self._dispatcher.start()
        self._running = True
        logger.info(f"Helper core {self.core_id} ready "
                    f"(operations: {', '.join(self._dispatcher.operations.names())})")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._dispatcher.stop()
        self._trust_store.clear()
        logger.info(f"Helper core {self.core_id} stopped")

    async def check_health(self) -> Dict[str, Any]:
        dispatcher_health = await self._dispatcher.check_health()
        return {
            'healthy': self._running,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'core_id': self.core_id,
                'trusted_main': self._trust_store.is_trusted(MAIN_CORE_ID),
                'pending_replies': self._outbox.qsize() if self._outbox else 0,
                'dispatcher': dispatcher_health['details'],
            }
        }

    async def handle_frame(self, data: bytes) -> Optional[bytes]:
        """Answer one frame from the main core."""
        return await self._dispatcher.handle_incoming(data)

    def submit(self, data: bytes) -> None:
        """Queue a frame for handling; its reply lands in the outbox."""
        if not self._running or self._outbox is None:
            raise RuntimeError("Helper node is not running")
        self._track(asyncio.create_task(self._answer_to_outbox(data)))

    async def next_outgoing(self, wait: float) -> Optional[bytes]:
        """Wait up to ``wait`` seconds for the next reply to the main core."""
        if self._outbox is None:
            raise RuntimeError("Helper node is not running")
        try:
            return await asyncio.wait_for(self._outbox.get(), wait)
        except asyncio.TimeoutError:
            return None

    async def serve_stream(self, reader: asyncio.StreamReader,
                           writer: asyncio.StreamWriter) -> None:
        """Answer frames from a stream until it closes."""
        write_lock = asyncio.Lock()

        async def answer(data: bytes) -> None:
            try:
                reply = await self.handle_frame(data)
                if reply is not None:
                    async with write_lock:
                        await write_frame(writer, reply, core_id=self.core_id)
            except Exception as e:
                logger.error(f"Failed to answer frame on helper {self.core_id}: {e}")

        while self._running:
            try:
                data = await read_frame(reader, core_id=self.core_id)
            except TransportError:
                logger.info(f"Main core closed the channel to helper {self.core_id}")
                break
            except MessageFormatError as e:
                # the stream cannot be resynchronized after a bad header
                logger.error(f"Closing channel to helper {self.core_id}: {e}")
                break
            self._track(asyncio.create_task(answer(data)))

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def serve_stdio(self) -> None:
        """Serve frames over this process's stdin and stdout."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)
        transport, protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout.buffer)
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        try:
            await self.serve_stream(reader, writer)
        finally:
            writer.close()

    async def _answer_to_outbox(self, data: bytes) -> None:
        try:
            reply = await self.handle_frame(data)
        except Exception as e:
            logger.error(f"Failed to handle frame on helper {self.core_id}: {e}")
            return
        if reply is not None and self._outbox is not None:
            await self._outbox.put(reply)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
