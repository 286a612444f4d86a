"""
Node identity: fingerprints and bootstrap proofs.

Under the ``tofu`` trust policy every process draws a random identity,
so a restarted helper presents a new fingerprint and must be forgotten
before it can be trusted again. Under ``pre_shared`` the fingerprint is
derived from the bootstrap secret and stays stable across restarts, and
Hello messages carry an HMAC proof of the secret.
"""

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

MAIN_CORE_ID = 0

_FINGERPRINT_LABEL = b"corelink-fingerprint"
_PROOF_LABEL = b"corelink-hello"


@dataclass(frozen=True)
class NodeIdentity:
    """Identity of the local core."""

    core_id: int
    fingerprint: str
    bootstrap_secret: Optional[bytes] = None

    @property
    def is_pre_shared(self) -> bool:
        return self.bootstrap_secret is not None

    @classmethod
    def create(cls, core_id: int, bootstrap_secret: Optional[str] = None) -> 'NodeIdentity':
        """
        Create the identity for a core.

        Args:
            core_id: Local core id (0 for the main core)
            bootstrap_secret: Out-of-band secret shared by all cores, if any
        """
        if bootstrap_secret:
            secret = bootstrap_secret.encode('utf-8')
            fingerprint = derive_fingerprint(secret, core_id)
            return cls(core_id=core_id, fingerprint=fingerprint, bootstrap_secret=secret)

        fingerprint = hashlib.sha256(os.urandom(32)).hexdigest()
        logger.debug(f"Generated ephemeral identity for core {core_id}")
        return cls(core_id=core_id, fingerprint=fingerprint)

    @property
    def wrapping_secret(self) -> bytes:
        """Input keying material for the first key exchange."""
        return self.bootstrap_secret or b""

    def proof(self, nonce: bytes) -> Optional[str]:
        """HMAC proof binding this identity to a Hello nonce."""
        if self.bootstrap_secret is None:
            return None
        return _hello_proof(self.bootstrap_secret, self.core_id, self.fingerprint, nonce)

    def verify_peer(self, core_id: int, fingerprint: str, nonce: bytes,
                    proof: Optional[str]) -> bool:
        """
        Check a peer's Hello against the bootstrap secret.

        Always True under TOFU, where there is nothing to check against.
        """
        if self.bootstrap_secret is None:
            return True
        if proof is None:
            return False
        expected_fp = derive_fingerprint(self.bootstrap_secret, core_id)
        if not hmac.compare_digest(expected_fp, fingerprint):
            return False
        expected = _hello_proof(self.bootstrap_secret, core_id, fingerprint, nonce)
        return hmac.compare_digest(expected, proof)


def derive_fingerprint(secret: bytes, core_id: int) -> str:
    """Derive the stable fingerprint of a core from the bootstrap secret."""
    message = _FINGERPRINT_LABEL + b"|" + str(core_id).encode('ascii')
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def _hello_proof(secret: bytes, core_id: int, fingerprint: str, nonce: bytes) -> str:
    message = b"|".join([
        _PROOF_LABEL,
        str(core_id).encode('ascii'),
        fingerprint.encode('utf-8'),
        nonce,
    ])
    return hmac.new(secret, message, hashlib.sha256).hexdigest()
