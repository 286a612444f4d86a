"""
Pairwise handshake and session-key lifecycle.

The main core initiates; helpers respond. A successful handshake pins the
peer's fingerprint (trust on first contact) and installs a fresh session
key on both sides:

    initiator                               responder
    HELLO {nonce_i, fingerprint, proof?} -->
                                        <-- HELLO_ACK {nonce_r, fingerprint, proof?}
    KEY_EXCHANGE {wrapped key, epoch}    -->
                                        <-- KEY_EXCHANGE_ACK {key check}

The first session key is wrapped under HKDF(bootstrap secret, nonces).
Without a bootstrap secret (the ``tofu`` policy) the wrapping key is
derivable by anyone who observed the Hello exchange, so the first
exchange is only as safe as the channel it travels over.

Key rotation sends the new key encrypted under the current one. The
initiator commits it after the peer proves it holds the new key. The
responder only stages it and switches over when the first message under
the new epoch authenticates, so a lost acknowledgement leaves both sides
on the old key.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from ..domain.messages import Envelope, MessageType
from ..domain.trust import SessionKey
from ..exceptions import (
    AuthenticationError, CorelinkError, DecryptionError, HandshakeError,
    ReplayError, UnknownCoreError, error_from_descriptor
)
from ..interfaces.security import ICryptoProvider
from .trust_store import TrustStore
from ...infrastructure.security.identity import NodeIdentity

logger = logging.getLogger(__name__)

Exchange = Callable[[Envelope], Awaitable[Envelope]]

_KEY_EXCHANGE_INFO = b"corelink-key-exchange"
_KEY_CHECK_AAD = b"corelink-key-check"


class HandshakeState(Enum):
    """States of one handshake attempt."""
    IDLE = "idle"
    HELLO_SENT = "hello_sent"
    HELLO_RECEIVED = "hello_received"
    KEY_EXCHANGED = "key_exchanged"
    TRUSTED = "trusted"
    FAILED = "failed"


@dataclass
class HandshakeAttempt:
    """Progress of a single handshake with one peer."""

    peer_id: int
    initiator: bool
    state: HandshakeState = HandshakeState.IDLE
    local_nonce: Optional[bytes] = None
    peer_nonce: Optional[bytes] = None
    peer_fingerprint: Optional[str] = None
    epoch: Optional[int] = None
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def advance(self, state: HandshakeState) -> None:
        self.state = state
        if state in (HandshakeState.TRUSTED, HandshakeState.FAILED):
            self.finished_at = time.time()

    def fail(self, error: Exception) -> None:
        self.error = f"{error.__class__.__name__}: {error}"
        self.advance(HandshakeState.FAILED)


class HandshakeProtocol:
    """
    Handshake state machine built on a crypto provider and trust store.

    One instance serves both roles: ``initiate`` drives a handshake from
    the main core and ``respond`` answers handshake messages on a helper.
    """

    def __init__(
        self,
        identity: NodeIdentity,
        crypto: ICryptoProvider,
        trust_store: TrustStore,
        session_key_max_age: Optional[float] = None,
        session_key_max_uses: Optional[int] = None
    ) -> None:
        self._identity = identity
        self._crypto = crypto
        self._trust_store = trust_store
        self._max_age = session_key_max_age
        self._max_uses = session_key_max_uses
        self._attempts: Dict[int, HandshakeAttempt] = {}

    @property
    def identity(self) -> NodeIdentity:
        return self._identity

    def verify_trust(self, core_id: int) -> bool:
        """Pure read against the trust store; performs no I/O."""
        return self._trust_store.is_trusted(core_id)

    def attempt_for(self, core_id: int) -> Optional[HandshakeAttempt]:
        """Most recent handshake attempt with a peer."""
        return self._attempts.get(core_id)

    async def initiate(self, peer_id: int, exchange: Exchange) -> HandshakeAttempt:
        """
        Run a full handshake with a peer.

        Args:
            peer_id: Core to establish trust with
            exchange: Sends an envelope to the peer and returns its reply

        Returns:
            The completed attempt

        Raises:
            SecurityError: On a trust conflict, replay, bad proof or key check
            TransportError: If the exchange itself failed
        """
        attempt = HandshakeAttempt(peer_id=peer_id, initiator=True)
        self._attempts[peer_id] = attempt
        logger.info(f"Starting handshake with core {peer_id}")

        try:
            attempt.local_nonce = self._crypto.generate_nonce()
            hello = Envelope(
                type=MessageType.HELLO,
                core_id=self._identity.core_id,
                nonce=attempt.local_nonce,
                fingerprint=self._identity.fingerprint,
                proof=self._identity.proof(attempt.local_nonce),
            )
            attempt.advance(HandshakeState.HELLO_SENT)
            ack = self._expect(await exchange(hello), MessageType.HELLO_ACK, peer_id)
            first_contact = self._accept_hello(ack, peer_id)
            attempt.peer_nonce = ack.nonce
            attempt.peer_fingerprint = ack.fingerprint
            attempt.advance(HandshakeState.HELLO_RECEIVED)

            session_key = self._crypto.generate_key()
            current = self._trust_store.current_key(peer_id)
            attempt.epoch = (current.epoch + 1) if current is not None else 1
            wrapping_key = self._wrapping_key(
                attempt.local_nonce, attempt.peer_nonce, self._identity.core_id, peer_id)
            key_exchange = Envelope(
                type=MessageType.KEY_EXCHANGE,
                core_id=self._identity.core_id,
                nonce=self._crypto.generate_nonce(),
                epoch=attempt.epoch,
                encrypted_session_key=self._crypto.encrypt(
                    session_key, wrapping_key, self._wrap_aad(attempt.epoch)),
            )
            reply = self._expect(
                await exchange(key_exchange), MessageType.KEY_EXCHANGE_ACK, peer_id)
            self._consume(peer_id, reply.nonce)
            self._verify_key_check(reply, key_exchange.nonce, session_key, peer_id)
            attempt.advance(HandshakeState.KEY_EXCHANGED)

            if first_contact:
                self._warn_unauthenticated(peer_id)
            self._trust_store.record_first_contact(
                peer_id, attempt.peer_fingerprint, self._new_session_key(session_key, attempt.epoch))
            attempt.advance(HandshakeState.TRUSTED)
            logger.info(f"Handshake with core {peer_id} complete (epoch {attempt.epoch})")
            return attempt

        except Exception as e:
            attempt.fail(e)
            logger.error(f"Handshake with core {peer_id} failed: {e}")
            raise

    async def rotate_keys(self, peer_id: int, exchange: Exchange) -> SessionKey:
        """
        Replace the session key shared with a peer.

        The new key travels encrypted under the current key and is only
        committed after the peer acknowledges it. The old key stays
        decryptable for the trust store's grace window. When no
        acknowledgement arrives the current key stays in use; the peer
        holds the new key staged until a later rotation or handshake
        replaces it.

        Raises:
            UnknownCoreError: If the peer is not trusted
            SecurityError: If the acknowledgement does not verify
            RequestTimeoutError: If no acknowledgement arrived in time
        """
        if not self.verify_trust(peer_id):
            raise UnknownCoreError("Cannot rotate keys with an untrusted core", core_id=peer_id)

        current = self._trust_store.current_key(peer_id)
        if current is None:
            raise UnknownCoreError("No session key for core", core_id=peer_id)

        new_key = self._crypto.generate_key()
        epoch = current.epoch + 1
        rotate = Envelope(
            type=MessageType.ROTATE,
            core_id=self._identity.core_id,
            nonce=self._crypto.generate_nonce(),
            epoch=epoch,
            encrypted_session_key=self._crypto.encrypt(
                new_key, current.key, self._rotate_aad(epoch)),
        )
        try:
            answer = await exchange(rotate)
        except CorelinkError as e:
            logger.warning(
                f"Rotation to epoch {epoch} with core {peer_id} unconfirmed, "
                f"staying on epoch {current.epoch}: {e}")
            raise
        reply = self._expect(answer, MessageType.ROTATE_ACK, peer_id)
        self._consume(peer_id, reply.nonce)
        self._verify_key_check(reply, rotate.nonce, new_key, peer_id)

        session_key = self._new_session_key(new_key, epoch)
        self._trust_store.rotate_session_key(peer_id, session_key, keep_previous=True)
        logger.info(f"Session key with core {peer_id} rotated to epoch {epoch}")
        return session_key

    def respond(self, message: Envelope) -> Envelope:
        """
        Answer one handshake message from a peer.

        Security failures are returned as error replies after the attempt
        is marked FAILED; they are never retried here.
        """
        peer_id = message.core_id
        try:
            if message.type is MessageType.HELLO:
                return self._respond_hello(message)
            if message.type is MessageType.KEY_EXCHANGE:
                return self._respond_key_exchange(message)
            if message.type is MessageType.ROTATE:
                return self._respond_rotate(message)
            raise HandshakeError(
                f"Unexpected handshake message: {message.type.value}", core_id=peer_id)

        except CorelinkError as e:
            attempt = self._attempts.get(peer_id)
            if attempt is not None and not attempt.initiator:
                attempt.fail(e)
            logger.error(f"Rejected {message.type.value} from core {peer_id}: {e}")
            return message.error_reply(self._identity.core_id, e)

    def _respond_hello(self, message: Envelope) -> Envelope:
        peer_id = message.core_id
        # a Hello always starts over
        attempt = HandshakeAttempt(peer_id=peer_id, initiator=False)
        self._attempts[peer_id] = attempt

        first_contact = self._accept_hello(message, peer_id)
        if first_contact:
            self._warn_unauthenticated(peer_id)
        self._trust_store.record_first_contact(peer_id, message.fingerprint or "")

        attempt.peer_nonce = message.nonce
        attempt.peer_fingerprint = message.fingerprint
        attempt.local_nonce = self._crypto.generate_nonce()
        attempt.advance(HandshakeState.HELLO_RECEIVED)

        return message.reply(
            MessageType.HELLO_ACK,
            self._identity.core_id,
            nonce=attempt.local_nonce,
            fingerprint=self._identity.fingerprint,
            proof=self._identity.proof(attempt.local_nonce),
        )

    def _respond_key_exchange(self, message: Envelope) -> Envelope:
        peer_id = message.core_id
        attempt = self._attempts.get(peer_id)
        if attempt is None or attempt.state is not HandshakeState.HELLO_RECEIVED:
            raise HandshakeError("Key exchange without a preceding Hello", core_id=peer_id)

        self._consume(peer_id, message.nonce)
        wrapping_key = self._wrapping_key(
            attempt.peer_nonce, attempt.local_nonce, peer_id, self._identity.core_id)
        session_key = self._crypto.decrypt(
            message.encrypted_session_key or b"", wrapping_key, self._wrap_aad(message.epoch))

        attempt.epoch = message.epoch
        self._trust_store.record_first_contact(
            peer_id, attempt.peer_fingerprint or "",
            self._new_session_key(session_key, message.epoch or 1))
        attempt.advance(HandshakeState.KEY_EXCHANGED)

        reply = message.reply(
            MessageType.KEY_EXCHANGE_ACK,
            self._identity.core_id,
            nonce=self._crypto.generate_nonce(),
            key_check=self._crypto.encrypt(message.nonce or b"", session_key, _KEY_CHECK_AAD),
        )
        attempt.advance(HandshakeState.TRUSTED)
        logger.info(f"Trusted core {peer_id} at epoch {message.epoch}")
        return reply

    def _respond_rotate(self, message: Envelope) -> Envelope:
        peer_id = message.core_id
        if not self.verify_trust(peer_id):
            raise HandshakeError("Key rotation from an untrusted core", core_id=peer_id)

        epoch = message.epoch or 0
        current = self._trust_store.current_key(peer_id)
        if current is not None and epoch <= current.epoch:
            raise HandshakeError(
                f"Rotation to epoch {epoch} does not follow epoch {current.epoch}",
                core_id=peer_id)
        # the base is the current key, or a staged one the initiator has committed
        base = self._trust_store.key_for_epoch(peer_id, epoch - 1)
        self._consume(peer_id, message.nonce)
        new_key = self._crypto.decrypt(
            message.encrypted_session_key or b"", base.key, self._rotate_aad(epoch))

        self._trust_store.commit_pending_key(peer_id, base.epoch)
        self._trust_store.stage_session_key(peer_id, self._new_session_key(new_key, epoch))
        return message.reply(
            MessageType.ROTATE_ACK,
            self._identity.core_id,
            nonce=self._crypto.generate_nonce(),
            key_check=self._crypto.encrypt(message.nonce or b"", new_key, _KEY_CHECK_AAD),
        )

    def _accept_hello(self, message: Envelope, peer_id: int) -> bool:
        """
        Validate a Hello or Hello ack.

        Returns True when this is the first contact with the peer.
        """
        if message.core_id != peer_id:
            raise HandshakeError(
                f"Reply claims to come from core {message.core_id}", core_id=peer_id)
        if message.core_id == self._identity.core_id:
            raise HandshakeError("Peer claims our own core id", core_id=peer_id)

        nonce = message.nonce or b""
        fingerprint = message.fingerprint or ""
        if not fingerprint:
            raise HandshakeError("Hello carries an empty fingerprint", core_id=peer_id)
        if not self._identity.verify_peer(peer_id, fingerprint, nonce, message.proof):
            raise AuthenticationError("Bootstrap proof did not verify", core_id=peer_id)
        self._consume(peer_id, nonce)
        self._trust_store.check_fingerprint(peer_id, fingerprint)
        return not self._trust_store.has_record(peer_id)

    def _expect(self, reply: Envelope, expected: MessageType, peer_id: int) -> Envelope:
        if reply.type is MessageType.ERROR:
            raise error_from_descriptor(reply.error or {}, core_id=peer_id)
        if reply.type is not expected:
            raise HandshakeError(
                f"Expected {expected.value}, got {reply.type.value}", core_id=peer_id)
        if reply.core_id != peer_id:
            raise HandshakeError(
                f"Reply claims to come from core {reply.core_id}", core_id=peer_id)
        return reply

    def _consume(self, peer_id: int, nonce: Optional[bytes]) -> None:
        if not nonce or not self._trust_store.consume_nonce(peer_id, nonce):
            raise ReplayError("Nonce already used", core_id=peer_id)

    def _verify_key_check(self, reply: Envelope, sent_nonce: Optional[bytes],
                          key: bytes, peer_id: int) -> None:
        try:
            echoed = self._crypto.decrypt(reply.key_check or b"", key, _KEY_CHECK_AAD)
        except DecryptionError:
            raise DecryptionError("Peer could not prove possession of the session key",
                                  core_id=peer_id)
        if echoed != sent_nonce:
            raise DecryptionError("Key check does not match", core_id=peer_id)

    def _wrapping_key(self, initiator_nonce: Optional[bytes], responder_nonce: Optional[bytes],
                      initiator_id: int, responder_id: int) -> bytes:
        salt = (initiator_nonce or b"") + (responder_nonce or b"")
        info = _KEY_EXCHANGE_INFO + f"|{initiator_id}|{responder_id}".encode('ascii')
        return self._crypto.derive_key(self._identity.wrapping_secret, salt, info)

    def _new_session_key(self, key: bytes, epoch: int) -> SessionKey:
        return SessionKey(
            key=key,
            epoch=epoch,
            created_at=self._trust_store.now(),
            max_age=self._max_age,
            max_uses=self._max_uses,
        )

    def _warn_unauthenticated(self, peer_id: int) -> None:
        if not self._identity.is_pre_shared:
            logger.warning(
                f"Trusting core {peer_id} on first contact without a bootstrap secret; "
                f"the first key exchange is only as safe as the transport channel")

    @staticmethod
    def _wrap_aad(epoch: Optional[int]) -> bytes:
        return f"key_exchange|{epoch}".encode('ascii')

    @staticmethod
    def _rotate_aad(epoch: int) -> bytes:
        return f"rotate|{epoch}".encode('ascii')


__all__ = [
    "Exchange",
    "HandshakeAttempt",
    "HandshakeProtocol",
    "HandshakeState",
]
