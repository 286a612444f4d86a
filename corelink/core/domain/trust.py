"""
Trust domain models: session keys, nonce history and per-core trust records.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class SessionKey:
    """
    Symmetric key material for one trust epoch.

    A key expires when it is older than ``max_age`` seconds or has been
    used for ``max_uses`` encryptions, whichever comes first. ``None``
    disables the respective limit.
    """

    key: bytes
    epoch: int = 1
    created_at: float = field(default_factory=time.monotonic)
    max_age: Optional[float] = None
    max_uses: Optional[int] = None
    uses: int = 0

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("Session key material cannot be empty")
        if self.epoch < 1:
            raise ValueError("Session key epoch must be positive")

    def is_expired(self, now: float) -> bool:
        """Check the expiry policy against the given monotonic time."""
        if self.max_age is not None and now - self.created_at >= self.max_age:
            return True
        if self.max_uses is not None and self.uses >= self.max_uses:
            return True
        return False

    def mark_used(self) -> None:
        self.uses += 1

    def __repr__(self) -> str:
        # never leak key material into logs
        return (f"SessionKey(epoch={self.epoch}, uses={self.uses}, "
                f"max_age={self.max_age}, max_uses={self.max_uses})")


class NonceHistory:
    """Bounded set of seen nonces; the oldest entries are evicted first."""

    def __init__(self, max_size: int = 4096) -> None:
        if max_size < 1:
            raise ValueError("Nonce history size must be positive")
        self._max_size = max_size
        self._seen: 'OrderedDict[bytes, None]' = OrderedDict()

    def consume(self, nonce: bytes) -> bool:
        """Record a nonce. Returns False if it was already seen."""
        if nonce in self._seen:
            return False
        self._seen[nonce] = None
        while len(self._seen) > self._max_size:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, nonce: object) -> bool:
        return nonce in self._seen

    def __len__(self) -> int:
        return len(self._seen)


@dataclass
class TrustRecord:
    """
    Trust state for a single core.

    The fingerprint is pinned at first contact. The session key may be
    absent between first contact and a completed key exchange. A pending
    key is one the peer announced by rotation but has not used yet.
    """

    core_id: int
    fingerprint: str
    nonce_history: NonceHistory
    session_key: Optional[SessionKey] = None
    previous_key: Optional[SessionKey] = None
    previous_retired_at: Optional[float] = None
    pending_key: Optional[SessionKey] = None
    created_at: float = field(default_factory=time.time)
    rotated_at: Optional[float] = None

    @property
    def epoch(self) -> int:
        """Epoch of the active session key, 0 if none is installed."""
        return self.session_key.epoch if self.session_key else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'core_id': self.core_id,
            'fingerprint': self.fingerprint,
            'epoch': self.epoch,
            'has_session_key': self.session_key is not None,
            'key_uses': self.session_key.uses if self.session_key else 0,
            'previous_epoch': self.previous_key.epoch if self.previous_key else None,
            'pending_epoch': self.pending_key.epoch if self.pending_key else None,
            'nonces_seen': len(self.nonce_history),
            'created_at': self.created_at,
            'rotated_at': self.rotated_at,
        }
