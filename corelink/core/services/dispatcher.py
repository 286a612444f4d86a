"""
Transport-agnostic request dispatcher.

On the main core the dispatcher selects a helper, makes sure a trusted
session exists, encrypts the request and tracks it until the response is
collected with ``receive``. On a helper the same class answers inbound
frames through ``handle_incoming``: handshake messages go to the
handshake responder, pings are answered in plaintext, and requests are
decrypted, executed through the operation registry and answered with an
encrypted response.
"""

import asyncio
import base64
import binascii
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..domain.cores import CoreStatus
from ..domain.messages import Envelope, MessageType
from ..domain.requests import Request, RequestStatus, Response
from ..domain.trust import SessionKey
from ..exceptions import (
    CorelinkError, HelperCrashError, MessageFormatError, NoCoreAvailableError,
    ReplayError, RequestTimeoutError, SecurityError, TransportError,
    UnknownCoreError, UnknownRequestError, error_from_descriptor
)
from ..interfaces.dispatch import IDispatcher
from ..interfaces.security import ICryptoProvider
from ..interfaces.transport import ITransport
from .core_registry import CoreRegistry
from .handshake import HandshakeProtocol
from .operations import OperationRegistry
from .peer_link import PeerLink
from .trust_store import TrustStore

logger = logging.getLogger(__name__)


@dataclass
class _TrackedRequest:
    request: Request
    message_id: Optional[str] = None
    future: Optional[asyncio.Future] = None
    load_held: bool = False
    response: Optional[Response] = None
    failure: Optional[CorelinkError] = None


class Dispatcher(IDispatcher):
    """
    Request/response dispatcher with load balancing and retry.

    Args:
        handshake: Handshake protocol bound to the local identity
        crypto: Crypto provider for request encryption
        trust_store: Trust records shared with the handshake protocol
        registry: Core registry consulted for target selection
        transport: Transport reaching the helpers; None on a helper
        operations: Operations this node can execute for its peers
        request_timeout: Default wait in ``receive``
        retry_attempts: Transmit attempts for retryable transport errors
        retry_delay: Base delay between attempts, doubled each time
        retention_window: Seconds an unconsumed request is kept
        handshake_timeout: Wait for each handshake reply
    """

    def __init__(
        self,
        handshake: HandshakeProtocol,
        crypto: ICryptoProvider,
        trust_store: TrustStore,
        registry: Optional[CoreRegistry] = None,
        transport: Optional[ITransport] = None,
        operations: Optional[OperationRegistry] = None,
        request_timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
        retention_window: float = 300.0,
        handshake_timeout: float = 10.0
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._handshake = handshake
        self._crypto = crypto
        self._trust_store = trust_store
        self._registry = registry or CoreRegistry()
        self._transport = transport
        self._operations = operations or OperationRegistry()
        self._request_timeout = request_timeout
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._retention_window = retention_window
        self._handshake_timeout = handshake_timeout

        self._core_id = handshake.identity.core_id
        self._requests: Dict[str, _TrackedRequest] = {}
        self._links: Dict[int, PeerLink] = {}
        self._trust_locks: Dict[int, asyncio.Lock] = {}
        self._purge_task: Optional[asyncio.Task] = None
        self._running = False

        self._metrics: Dict[str, Any] = {
            'requests_sent': 0,
            'requests_completed': 0,
            'requests_failed': 0,
            'requests_timed_out': 0,
            'requests_handled': 0,
            'transmit_retries': 0,
            'handshakes': 0,
            'security_failures': 0,
            'avg_response_time': 0.0,
        }

    @property
    def name(self) -> str:
        return "Dispatcher"

    @property
    def operations(self) -> OperationRegistry:
        return self._operations

    async def start(self) -> None:
        if self._running:
            return

        logger.info("Starting dispatcher")
        self._running = True
        if self._transport is not None:
            for core_id in self._registry.core_ids():
                link = PeerLink(core_id, self._transport, self._transmit, self.handle_incoming)
                link.start()
                self._links[core_id] = link
        if self._retention_window > 0:
            self._purge_task = asyncio.create_task(self._purge_loop())
        logger.info(f"Dispatcher started with {len(self._links)} link(s)")

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping dispatcher...")
        self._running = False

        if self._purge_task:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None

        for link in self._links.values():
            await link.stop()
        self._links.clear()

        for tracked in list(self._requests.values()):
            self._finish(tracked, RequestStatus.FAILED,
                         TransportError("Dispatcher stopped", request_id=tracked.request.request_id))
        self._requests.clear()
        logger.info("Dispatcher stopped")

    async def check_health(self) -> Dict[str, Any]:
        in_flight = sum(
            1 for tracked in self._requests.values() if not tracked.request.status.is_terminal)
        return {
            'healthy': self._running,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'links': len(self._links),
                'tracked_requests': len(self._requests),
                'in_flight': in_flight,
                'operations': self._operations.names(),
                **self._metrics,
            }
        }

    def get_metrics(self) -> Dict[str, Any]:
        return self._metrics.copy()

    def is_trusted(self, core_id: int) -> bool:
        return self._handshake.verify_trust(core_id)

    def get_request(self, request_id: str) -> Request:
        tracked = self._requests.get(request_id)
        if tracked is None:
            raise UnknownRequestError("Request is not tracked", request_id=request_id)
        return tracked.request

    async def send(self, target: Optional[int], operation: str,
                   payload: bytes = b"") -> str:
        if not self._running:
            raise RuntimeError("Dispatcher is not running")

        core_id = self._select_target(target)
        link = self._link(core_id)
        request = Request(core_id=core_id, operation=operation, payload=payload)
        tracked = _TrackedRequest(request=request)
        self._requests[request.request_id] = tracked

        try:
            await self.ensure_trust(core_id)
            envelope = self._seal_request(request, self._trust_store.active_key(core_id))
        except CorelinkError as e:
            self._finish(tracked, RequestStatus.FAILED, e)
            self._requests.pop(request.request_id, None)
            raise

        tracked.message_id = envelope.message_id
        tracked.future = link.expect(envelope.message_id)
        self._registry.increment_load(core_id)
        tracked.load_held = True

        try:
            await self._transmit(core_id, envelope.encode())
        except CorelinkError as e:
            link.discard(envelope.message_id)
            self._finish(tracked, RequestStatus.FAILED, e)
            self._requests.pop(request.request_id, None)
            raise

        request.transition(RequestStatus.IN_FLIGHT)
        self._metrics['requests_sent'] += 1
        logger.debug(f"Sent {operation} to core {core_id} as request {request.request_id}")
        return request.request_id

    async def receive(self, request_id: str,
                      timeout: Optional[float] = None) -> Response:
        tracked = self._requests.get(request_id)
        if tracked is None:
            raise UnknownRequestError("Request is not tracked", request_id=request_id)

        request = tracked.request
        if request.status.is_terminal:
            self._requests.pop(request_id, None)
            if tracked.response is not None:
                return tracked.response
            raise tracked.failure or UnknownRequestError(
                "Request already finished", request_id=request_id)

        if tracked.future is None:
            raise UnknownRequestError("Request was never transmitted", request_id=request_id)

        wait = self._request_timeout if timeout is None else timeout
        try:
            envelope = await asyncio.wait_for(tracked.future, wait)
        except asyncio.TimeoutError:
            error = RequestTimeoutError(
                f"No response within {wait}s", core_id=request.core_id, request_id=request_id)
            self._abandon(tracked, error)
            raise error
        except asyncio.CancelledError:
            self._abandon(tracked, RequestTimeoutError(
                "Caller stopped waiting", core_id=request.core_id, request_id=request_id))
            raise
        except TransportError as e:
            self._finish(tracked, RequestStatus.FAILED, e)
            self._requests.pop(request_id, None)
            raise

        try:
            response = self._open_response(request, envelope)
        except CorelinkError as e:
            if isinstance(e, SecurityError):
                self._security_failure(request.core_id, e)
            self._finish(tracked, RequestStatus.FAILED, e)
            self._requests.pop(request_id, None)
            raise

        tracked.response = response
        self._finish(tracked, RequestStatus.COMPLETED if response.ok else RequestStatus.FAILED)
        self._requests.pop(request_id, None)
        return response

    async def call(self, target: Optional[int], operation: str, payload: bytes = b"",
                   timeout: Optional[float] = None) -> bytes:
        """Send, wait and unwrap the result, raising the remote error if any."""
        request_id = await self.send(target, operation, payload)
        response = await self.receive(request_id, timeout)
        response.raise_for_error()
        return response.result or b""

    async def ensure_trust(self, core_id: int) -> None:
        """
        Run a handshake with a core unless a live session key exists.

        Raises:
            SecurityError: If the core is on security hold or the handshake
                failed for security reasons (the core is then put on hold)
        """
        async with self._trust_lock(core_id):
            if self._handshake.verify_trust(core_id):
                return
            if self._registry.get_state(core_id).security_hold:
                raise SecurityError(
                    "Core is on security hold; an explicit re-handshake is required",
                    core_id=core_id)
            await self._run_handshake(core_id)

    async def rehandshake(self, core_id: int) -> None:
        """Clear a security hold and establish a fresh session with a core."""
        self._link(core_id)
        async with self._trust_lock(core_id):
            self._registry.set_security_hold(core_id, False)
            await self._run_handshake(core_id)

    async def rotate_keys(self, core_id: int) -> SessionKey:
        """Rotate the session key shared with a trusted core."""
        link = self._link(core_id)
        async with self._trust_lock(core_id):
            try:
                return await self._handshake.rotate_keys(core_id, self._exchange(link))
            except SecurityError as e:
                self._security_failure(core_id, e)
                raise

    async def ping(self, core_id: int, timeout: Optional[float] = None) -> float:
        link = self._link(core_id)
        probe = Envelope(
            type=MessageType.PING,
            core_id=self._core_id,
            request_id=uuid.uuid4().hex,
        )
        started = time.monotonic()
        reply = await link.exchange(probe, self._handshake_timeout if timeout is None else timeout)
        if reply.type is MessageType.ERROR:
            raise error_from_descriptor(reply.error or {}, core_id=core_id)
        if reply.type is not MessageType.PONG:
            raise MessageFormatError(f"Expected pong, got {reply.type.value}", core_id=core_id)
        return time.monotonic() - started

    async def handle_incoming(self, data: bytes) -> Optional[bytes]:
        try:
            envelope = Envelope.decode(data)
        except MessageFormatError as e:
            logger.warning(f"Rejected malformed frame: {e}")
            return Envelope(
                type=MessageType.ERROR,
                core_id=self._core_id,
                error={'kind': e.kind, 'message': e.message},
            ).encode()

        if envelope.type.is_reply:
            logger.debug(f"Ignoring unsolicited {envelope.type.value} from core {envelope.core_id}")
            return None

        if envelope.type.is_handshake:
            reply = self._handshake.respond(envelope)
        elif envelope.type is MessageType.PING:
            reply = envelope.reply(MessageType.PONG, self._core_id)
        else:
            reply = await self.handle_incoming_request(envelope)
        return reply.encode()

    async def handle_incoming_request(self, envelope: Envelope) -> Envelope:
        """
        Decrypt, execute and answer one request envelope.

        Security failures are answered with a plaintext error envelope;
        operation failures travel inside the encrypted response.
        """
        sender = envelope.core_id
        request_id = envelope.request_id
        try:
            if not self._trust_store.consume_nonce(sender, envelope.nonce or b""):
                raise ReplayError("Request nonce already used",
                                  core_id=sender, request_id=request_id)
            key = self._trust_store.key_for_epoch(sender, envelope.epoch or 0)
            plaintext = self._crypto.decrypt(
                envelope.ciphertext or b"", key.key,
                _associated_data(sender, request_id, key.epoch, envelope.nonce))
            self._trust_store.commit_pending_key(sender, key.epoch)
        except SecurityError as e:
            e.request_id = e.request_id or request_id
            self._metrics['security_failures'] += 1
            logger.error(f"Rejected request {request_id} from core {sender}: {e}")
            return envelope.error_reply(self._core_id, e)

        self._metrics['requests_handled'] += 1
        try:
            body = json.loads(plaintext.decode('utf-8'))
            operation = body['operation']
            payload = base64.b64decode(body.get('payload', ''), validate=True)
            result = await self._operations.execute(operation, payload)
            answer: Dict[str, Any] = {'result': base64.b64encode(result).decode('ascii')}
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            logger.warning(f"Malformed request body {request_id} from core {sender}: {e}")
            answer = {'error': {'kind': 'MessageFormatError', 'message': str(e)}}
        except CorelinkError as e:
            logger.info(f"Request {request_id} from core {sender} failed: {e}")
            answer = {'error': {'kind': e.kind, 'message': e.message}}

        nonce = self._crypto.generate_nonce()
        ciphertext = self._crypto.encrypt(
            json.dumps(answer).encode('utf-8'), key.key,
            _associated_data(self._core_id, request_id, key.epoch, nonce))
        return envelope.reply(
            MessageType.RESPONSE, self._core_id,
            nonce=nonce, epoch=key.epoch, ciphertext=ciphertext)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """
        Drop requests older than the retention window.

        Unfinished requests are timed out first, releasing their load.
        """
        now = time.time() if now is None else now
        purged = 0
        for request_id, tracked in list(self._requests.items()):
            if now - tracked.request.created_at < self._retention_window:
                continue
            if not tracked.request.status.is_terminal:
                self._abandon(tracked, RequestTimeoutError(
                    "Request expired unconsumed",
                    core_id=tracked.request.core_id, request_id=request_id))
            self._requests.pop(request_id, None)
            purged += 1
        if purged:
            logger.debug(f"Purged {purged} expired request(s)")
        return purged

    def _select_target(self, target: Optional[int]) -> int:
        if target is None:
            return self._registry.least_loaded_core(lambda state: not state.security_hold)

        state = self._registry.get_state(target)
        if state.security_hold:
            raise SecurityError(
                "Core is on security hold; an explicit re-handshake is required",
                core_id=target)
        if state.status is CoreStatus.UNRESPONSIVE:
            raise HelperCrashError("Core is unresponsive", core_id=target)
        if state.status is CoreStatus.CLOSED:
            raise NoCoreAvailableError("Core is closed", core_id=target)
        return target

    def _link(self, core_id: int) -> PeerLink:
        link = self._links.get(core_id)
        if link is None:
            raise UnknownCoreError("No link to core", core_id=core_id)
        return link

    def _trust_lock(self, core_id: int) -> asyncio.Lock:
        lock = self._trust_locks.get(core_id)
        if lock is None:
            lock = self._trust_locks[core_id] = asyncio.Lock()
        return lock

    def _exchange(self, link: PeerLink):
        async def exchange(envelope: Envelope) -> Envelope:
            return await link.exchange(envelope, self._handshake_timeout)
        return exchange

    async def _run_handshake(self, core_id: int) -> None:
        # caller holds the core's trust lock
        link = self._link(core_id)
        self._registry.set_status(core_id, CoreStatus.HANDSHAKING)
        try:
            await self._handshake.initiate(core_id, self._exchange(link))
        except SecurityError as e:
            self._security_failure(core_id, e)
            self._registry.set_status(core_id, CoreStatus.INITIALIZED, error=str(e))
            raise
        except Exception as e:
            self._registry.set_status(core_id, CoreStatus.INITIALIZED, error=str(e))
            raise
        self._metrics['handshakes'] += 1
        self._registry.set_status(core_id, CoreStatus.TRUSTED)

    def _security_failure(self, core_id: int, error: SecurityError) -> None:
        self._metrics['security_failures'] += 1
        self._registry.set_security_hold(core_id, True, error=str(error))
        logger.error(f"Security failure with core {core_id}, holding until re-handshake: {error}")

    async def _transmit(self, core_id: int, data: bytes) -> None:
        """Send one frame, retrying retryable transport errors with backoff."""
        if self._transport is None:
            raise TransportError("No transport configured", core_id=core_id)

        for attempt in range(self._retry_attempts):
            try:
                await self._transport.send(core_id, data)
                return
            except TransportError as e:
                if not e.retryable or attempt == self._retry_attempts - 1:
                    raise
                self._metrics['transmit_retries'] += 1
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"Send to core {core_id} failed (attempt {attempt + 1}/"
                    f"{self._retry_attempts}), retrying in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)

    def _seal_request(self, request: Request, key: SessionKey) -> Envelope:
        nonce = self._crypto.generate_nonce()
        body = {
            'operation': request.operation,
            'payload': base64.b64encode(request.payload).decode('ascii'),
        }
        ciphertext = self._crypto.encrypt(
            json.dumps(body).encode('utf-8'), key.key,
            _associated_data(self._core_id, request.request_id, key.epoch, nonce))
        return Envelope(
            type=MessageType.REQUEST,
            core_id=self._core_id,
            request_id=request.request_id,
            nonce=nonce,
            epoch=key.epoch,
            ciphertext=ciphertext,
        )

    def _open_response(self, request: Request, envelope: Envelope) -> Response:
        core_id = request.core_id
        if envelope.type is MessageType.ERROR:
            error = dict(envelope.error or {})
            remote = error_from_descriptor(error, core_id=core_id, request_id=request.request_id)
            if isinstance(remote, SecurityError):
                raise remote
            return Response(request_id=request.request_id, core_id=core_id, error=error)

        if envelope.type is not MessageType.RESPONSE:
            raise MessageFormatError(
                f"Expected response, got {envelope.type.value}",
                core_id=core_id, request_id=request.request_id)

        if not self._trust_store.consume_nonce(core_id, envelope.nonce or b""):
            raise ReplayError("Response nonce already used",
                              core_id=core_id, request_id=request.request_id)
        key = self._trust_store.key_for_epoch(core_id, envelope.epoch or 0)
        plaintext = self._crypto.decrypt(
            envelope.ciphertext or b"", key.key,
            _associated_data(core_id, request.request_id, key.epoch, envelope.nonce))

        try:
            body = json.loads(plaintext.decode('utf-8'))
            if 'error' in body:
                return Response(request_id=request.request_id, core_id=core_id,
                                error=dict(body['error']))
            result = base64.b64decode(body.get('result', ''), validate=True)
        except (ValueError, TypeError, binascii.Error) as e:
            raise MessageFormatError(f"Malformed response body: {e}",
                                     core_id=core_id, request_id=request.request_id)
        return Response.success(request.request_id, core_id, result)

    def _abandon(self, tracked: _TrackedRequest, error: RequestTimeoutError) -> None:
        if tracked.message_id is not None:
            link = self._links.get(tracked.request.core_id)
            if link is not None:
                link.discard(tracked.message_id)
        if self._finish(tracked, RequestStatus.TIMED_OUT, error):
            logger.warning(f"Request {tracked.request.request_id} timed out: {error}")
        self._requests.pop(tracked.request.request_id, None)

    def _finish(self, tracked: _TrackedRequest, status: RequestStatus,
                error: Optional[CorelinkError] = None) -> bool:
        """Move a request to a terminal status, releasing its load exactly once."""
        request = tracked.request
        if not request.transition(status):
            return False

        if error is not None:
            tracked.failure = error
            request.error = {'kind': error.kind, 'message': error.message}
        if tracked.load_held:
            tracked.load_held = False
            self._registry.decrement_load(request.core_id)

        if status is RequestStatus.COMPLETED:
            self._metrics['requests_completed'] += 1
            elapsed = (request.finished_at or time.time()) - request.created_at
            completed = self._metrics['requests_completed']
            self._metrics['avg_response_time'] += (
                elapsed - self._metrics['avg_response_time']) / completed
        elif status is RequestStatus.TIMED_OUT:
            self._metrics['requests_timed_out'] += 1
        else:
            self._metrics['requests_failed'] += 1
        return True

    async def _purge_loop(self) -> None:
        interval = max(1.0, self._retention_window / 2)
        while self._running:
            try:
                await asyncio.sleep(interval)
                self.purge_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Request purge failed: {e}")


def _associated_data(sender: int, request_id: Optional[str], epoch: int,
                     nonce: Optional[bytes]) -> bytes:
    """Bind ciphertext to its sender, request, key epoch and message nonce."""
    header = f"corelink|{sender}|{request_id}|{epoch}|".encode('utf-8')
    return header + (nonce or b"")
