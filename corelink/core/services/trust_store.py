"""
In-memory trust store with trust-on-first-contact acceptance.

Holds one TrustRecord per core: the fingerprint pinned at first contact,
the active session key, the immediately previous key (accepted for a
grace window after rotation) and a bounded nonce history.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..domain.trust import NonceHistory, SessionKey, TrustRecord
from ..exceptions import DecryptionError, TrustConflictError, UnknownCoreError

logger = logging.getLogger(__name__)


class TrustStore:
    """
    Per-core trust records and session keys.

    Operations on one core are serialized by a per-core lock; operations
    on different cores never contend.
    """

    def __init__(
        self,
        nonce_history_size: int = 4096,
        key_grace_period: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        if key_grace_period < 0:
            raise ValueError("Key grace period cannot be negative")
        self._nonce_history_size = nonce_history_size
        self._key_grace_period = key_grace_period
        self._clock = clock

        self._records: Dict[int, TrustRecord] = {}
        self._nonces: Dict[int, NonceHistory] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @property
    def key_grace_period(self) -> float:
        return self._key_grace_period

    def now(self) -> float:
        """Current time on the store's clock."""
        return self._clock()

    def is_trusted(self, core_id: int) -> bool:
        """True iff a record with a non-expired session key exists."""
        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None or record.session_key is None:
                return False
            return not record.session_key.is_expired(self._clock())

    def has_record(self, core_id: int) -> bool:
        with self._lock(core_id):
            return core_id in self._records

    def fingerprint_of(self, core_id: int) -> Optional[str]:
        with self._lock(core_id):
            record = self._records.get(core_id)
            return record.fingerprint if record else None

    def check_fingerprint(self, core_id: int, fingerprint: str) -> None:
        """
        Verify a presented fingerprint against the pinned one.

        Raises:
            TrustConflictError: If the core is pinned to a different fingerprint
        """
        pinned = self.fingerprint_of(core_id)
        if pinned is not None and pinned != fingerprint:
            logger.error(
                f"Fingerprint conflict for core {core_id}: pinned {pinned[:16]}..., "
                f"presented {fingerprint[:16]}...")
            raise TrustConflictError(
                "Core presented a fingerprint that differs from the pinned identity",
                core_id=core_id
            )

    def record_first_contact(self, core_id: int, fingerprint: str,
                             session_key: Optional[SessionKey] = None) -> TrustRecord:
        """
        Accept a core's identity on first contact.

        A core already pinned to the same fingerprint keeps its record and
        has the new session key installed. The replaced key stays decryptable
        for the grace window so responses to requests sealed under it still
        open; a staged rotation key is dropped.

        Raises:
            TrustConflictError: If a differing fingerprint is presented
        """
        if not fingerprint:
            raise ValueError("Fingerprint cannot be empty")

        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None:
                record = TrustRecord(
                    core_id=core_id,
                    fingerprint=fingerprint,
                    nonce_history=self._nonce_history(core_id),
                    session_key=session_key,
                )
                self._records[core_id] = record
                logger.info(f"Recorded first contact with core {core_id}")
                return record

            if record.fingerprint != fingerprint:
                raise TrustConflictError(
                    "Core presented a fingerprint that differs from the pinned identity",
                    core_id=core_id
                )

            if session_key is not None:
                if record.session_key is not None:
                    record.previous_key = record.session_key
                    record.previous_retired_at = self._clock()
                record.session_key = session_key
                record.pending_key = None
                record.rotated_at = time.time()
            return record

    def rotate_session_key(self, core_id: int, new_key: SessionKey,
                           keep_previous: bool = True) -> TrustRecord:
        """
        Replace the session key of a known core, keeping its fingerprint.

        Args:
            core_id: Core whose key is rotated
            new_key: Replacement key
            keep_previous: Keep the old key decryptable for the grace window

        Raises:
            UnknownCoreError: If no record exists for the core
        """
        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None:
                raise UnknownCoreError("No trust record for core", core_id=core_id)

            if keep_previous and record.session_key is not None:
                record.previous_key = record.session_key
                record.previous_retired_at = self._clock()
            else:
                record.previous_key = None
                record.previous_retired_at = None
            record.session_key = new_key
            record.pending_key = None
            record.rotated_at = time.time()

            logger.info(f"Rotated session key for core {core_id} to epoch {new_key.epoch}")
            return record

    def stage_session_key(self, core_id: int, new_key: SessionKey) -> TrustRecord:
        """
        Hold a rotated key until the peer first uses it.

        The current key stays active, so a rotation whose acknowledgement
        never reached the peer leaves both sides on the old epoch. Staging
        again replaces the earlier staged key.

        Raises:
            UnknownCoreError: If the core has no session key to rotate from
        """
        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None or record.session_key is None:
                raise UnknownCoreError("No session key for core", core_id=core_id)
            if new_key.epoch <= record.session_key.epoch:
                raise ValueError(
                    f"Staged epoch {new_key.epoch} does not follow {record.session_key.epoch}")
            record.pending_key = new_key

        logger.info(f"Staged session key for core {core_id} at epoch {new_key.epoch}")
        return record

    def commit_pending_key(self, core_id: int, epoch: int) -> bool:
        """
        Promote the staged key once a message under its epoch authenticated.

        Returns True when a key was promoted; any other epoch is a no-op.
        """
        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None or record.pending_key is None or record.pending_key.epoch != epoch:
                return False
            record.previous_key = record.session_key
            record.previous_retired_at = self._clock()
            record.session_key = record.pending_key
            record.pending_key = None
            record.rotated_at = time.time()

        logger.info(f"Rotated session key for core {core_id} to epoch {epoch}")
        return True

    def consume_nonce(self, core_id: int, nonce: bytes) -> bool:
        """
        Mark a nonce as used for a core.

        Returns False when the nonce was already seen, which callers must
        treat as a replay attempt.
        """
        with self._lock(core_id):
            accepted = self._nonce_history(core_id).consume(nonce)
        if not accepted:
            logger.warning(f"Replayed nonce from core {core_id}")
        return accepted

    def active_key(self, core_id: int) -> SessionKey:
        """
        Return the session key to encrypt with, counting one use.

        Raises:
            UnknownCoreError: If the core has no usable session key
        """
        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None or record.session_key is None:
                raise UnknownCoreError("No session key for core", core_id=core_id)
            if record.session_key.is_expired(self._clock()):
                raise UnknownCoreError("Session key expired", core_id=core_id)
            record.session_key.mark_used()
            return record.session_key

    def current_key(self, core_id: int) -> Optional[SessionKey]:
        """Return the active session key without counting a use."""
        with self._lock(core_id):
            record = self._records.get(core_id)
            return record.session_key if record else None

    def key_for_epoch(self, core_id: int, epoch: int) -> SessionKey:
        """
        Look up the key for a received message's epoch.

        The current epoch is always accepted, as is a staged epoch (see
        ``commit_pending_key``). The immediately previous epoch is only
        accepted within the grace window after rotation.

        Raises:
            DecryptionError: If no acceptable key exists for the epoch
        """
        with self._lock(core_id):
            record = self._records.get(core_id)
            if record is None or record.session_key is None:
                raise DecryptionError("No session key for core", core_id=core_id)

            if record.session_key.epoch == epoch:
                return record.session_key
            if record.pending_key is not None and record.pending_key.epoch == epoch:
                return record.pending_key

            previous = record.previous_key
            if previous is not None and previous.epoch == epoch:
                retired_at = record.previous_retired_at or 0.0
                if self._clock() - retired_at <= self._key_grace_period:
                    return previous
                raise DecryptionError(
                    f"Session key epoch {epoch} is past its grace window", core_id=core_id)

            raise DecryptionError(
                f"No session key for epoch {epoch} (current {record.session_key.epoch})",
                core_id=core_id
            )

    def get_record(self, core_id: int) -> Optional[TrustRecord]:
        with self._lock(core_id):
            return self._records.get(core_id)

    def forget(self, core_id: int) -> bool:
        """Delete a core's trust record and nonce history."""
        with self._lock(core_id):
            removed = self._records.pop(core_id, None) is not None
            self._nonces.pop(core_id, None)
        if removed:
            logger.info(f"Forgot trust record for core {core_id}")
        return removed

    def clear(self) -> None:
        """Drop all trust state."""
        with self._registry_lock:
            core_ids = list(self._locks)
        for core_id in core_ids:
            self.forget(core_id)

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._registry_lock:
            core_ids = sorted(self._locks)
        result = []
        for core_id in core_ids:
            record = self.get_record(core_id)
            if record is not None:
                info = record.to_dict()
                info['trusted'] = self.is_trusted(core_id)
                result.append(info)
        return result

    def _lock(self, core_id: int) -> threading.Lock:
        lock = self._locks.get(core_id)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(core_id, threading.Lock())
        return lock

    def _nonce_history(self, core_id: int) -> NonceHistory:
        # caller holds the core lock
        history = self._nonces.get(core_id)
        if history is None:
            history = NonceHistory(self._nonce_history_size)
            self._nonces[core_id] = history
        return history
