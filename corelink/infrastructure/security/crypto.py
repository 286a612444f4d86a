"""
Authenticated symmetric encryption for inter-core traffic.

This module wraps AES-256-GCM and HKDF from the ``cryptography`` package
behind the ICryptoProvider interface.
"""

import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ...core.exceptions import DecryptionError, EntropyError
from ...core.interfaces.security import ICryptoProvider

logger = logging.getLogger(__name__)


class CryptoProvider(ICryptoProvider):
    """
    AES-256-GCM crypto provider.

    Ciphertext layout is ``gcm_nonce (12 bytes) || ciphertext || tag (16 bytes)``.
    Keys are 32 bytes; nonces handed out by generate_nonce() are 16 bytes.
    """

    KEY_SIZE = 32
    NONCE_SIZE = 16
    GCM_NONCE_SIZE = 12
    TAG_SIZE = 16

    def generate_key(self) -> bytes:
        """Generate a 256-bit key from the OS random source."""
        return self._random_bytes(self.KEY_SIZE)

    def generate_nonce(self) -> bytes:
        """Generate a 128-bit single-use nonce."""
        return self._random_bytes(self.NONCE_SIZE)

    def encrypt(self, plaintext: bytes, key: bytes,
                associated_data: Optional[bytes] = None) -> bytes:
        """
        Encrypt plaintext under key.

        Args:
            plaintext: Data to encrypt
            key: 32-byte key
            associated_data: Optional data authenticated but not encrypted

        Returns:
            GCM nonce followed by ciphertext and tag
        """
        self._check_key(key)
        gcm_nonce = self._random_bytes(self.GCM_NONCE_SIZE)
        return gcm_nonce + AESGCM(key).encrypt(gcm_nonce, plaintext, associated_data)

    def decrypt(self, ciphertext: bytes, key: bytes,
                associated_data: Optional[bytes] = None) -> bytes:
        """
        Decrypt data produced by encrypt().

        Raises:
            DecryptionError: On a wrong key, tampered or truncated input
        """
        if len(key) != self.KEY_SIZE:
            raise DecryptionError(f"Invalid key length: {len(key)}")
        if len(ciphertext) < self.GCM_NONCE_SIZE + self.TAG_SIZE:
            raise DecryptionError(f"Ciphertext too short: {len(ciphertext)} bytes")

        gcm_nonce = ciphertext[:self.GCM_NONCE_SIZE]
        try:
            return AESGCM(key).decrypt(
                gcm_nonce, ciphertext[self.GCM_NONCE_SIZE:], associated_data)
        except InvalidTag:
            raise DecryptionError("Authentication tag mismatch")

    def derive_key(self, secret: bytes, salt: bytes, info: bytes) -> bytes:
        """Derive a 32-byte key with HKDF-SHA256."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=self.KEY_SIZE,
            salt=salt or None,
            info=info,
        )
        return hkdf.derive(secret)

    def _check_key(self, key: bytes) -> None:
        if len(key) != self.KEY_SIZE:
            raise ValueError(
                f"Key must be {self.KEY_SIZE} bytes, got {len(key)}")

    @staticmethod
    def _random_bytes(size: int) -> bytes:
        try:
            return os.urandom(size)
        except (NotImplementedError, OSError) as e:
            logger.error(f"Secure random source unavailable: {e}")
            raise EntropyError(f"Secure random source unavailable: {e}")
