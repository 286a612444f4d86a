"""
Per-core receive pump and reply correlation.

A PeerLink owns the only reader of a core's transport channel. Replies
(acks, responses, pongs, errors) are matched to waiting futures by
correlation id; anything else is handed to the local frame handler and
its reply written back to the core.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from ..domain.messages import Envelope
from ..exceptions import MessageFormatError, RequestTimeoutError, TransportError
from ..interfaces.transport import ITransport

logger = logging.getLogger(__name__)

FrameHandler = Callable[[bytes], Awaitable[Optional[bytes]]]
FrameSender = Callable[[int, bytes], Awaitable[None]]

_MIN_BACKOFF = 0.05
_MAX_BACKOFF = 1.0


class PeerLink:
    """Receive loop and pending-reply table for one core."""

    def __init__(self, core_id: int, transport: ITransport,
                 send: FrameSender, on_frame: FrameHandler) -> None:
        self._core_id = core_id
        self._transport = transport
        self._send = send
        self._on_frame = on_frame
        self._pending: Dict[str, asyncio.Future] = {}
        self._handlers: Set[asyncio.Task] = set()
        self._pump_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def core_id(self) -> int:
        return self._core_id

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._pump_task = asyncio.create_task(self._pump())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        tasks = list(self._handlers)
        if self._pump_task is not None:
            tasks.append(self._pump_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pump_task = None
        self._handlers.clear()

        self.fail_pending(TransportError("Link closed", core_id=self._core_id))

    def expect(self, correlation_id: str) -> asyncio.Future:
        """Register interest in the reply to a message."""
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        return future

    def discard(self, correlation_id: str) -> None:
        """Stop waiting for a reply; a late arrival will be dropped."""
        future = self._pending.pop(correlation_id, None)
        if future is not None and not future.done():
            future.cancel()

    def fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def exchange(self, envelope: Envelope, timeout: float) -> Envelope:
        """
        Send an envelope and wait for its reply.

        Raises:
            RequestTimeoutError: If no reply arrived within ``timeout``
            TransportError: If sending failed or the channel broke
        """
        future = self.expect(envelope.message_id)
        try:
            await self._send(self._core_id, envelope.encode())
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"No reply to {envelope.type.value} within {timeout}s",
                core_id=self._core_id, request_id=envelope.request_id)
        finally:
            self.discard(envelope.message_id)

    async def _pump(self) -> None:
        backoff = _MIN_BACKOFF
        while self._running:
            try:
                data = await self._transport.receive(self._core_id)
            except asyncio.CancelledError:
                raise
            except TransportError as e:
                if not self._running:
                    break
                logger.debug(f"Receive from core {self._core_id} failed: {e}")
                self.fail_pending(e)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)
                continue
            except Exception as e:
                logger.error(f"Unexpected receive error from core {self._core_id}: {e}")
                self.fail_pending(TransportError(str(e), core_id=self._core_id))
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)
                continue

            backoff = _MIN_BACKOFF
            self._route(data)

    def _route(self, data: bytes) -> None:
        try:
            envelope = Envelope.decode(data)
        except MessageFormatError as e:
            logger.warning(f"Dropping malformed frame from core {self._core_id}: {e}")
            return

        if envelope.type.is_reply:
            correlation_id = envelope.correlation_id
            future = self._pending.pop(correlation_id, None) if correlation_id else None
            if future is None or future.done():
                logger.debug(
                    f"Discarding late {envelope.type.value} from core {self._core_id} "
                    f"({correlation_id})")
                return
            future.set_result(envelope)
            return

        task = asyncio.create_task(self._handle(data))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _handle(self, data: bytes) -> None:
        try:
            reply = await self._on_frame(data)
            if reply is not None:
                await self._send(self._core_id, reply)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to answer frame from core {self._core_id}: {e}")
