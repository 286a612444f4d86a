"""
Cryptographic provider interface used by the handshake and dispatcher.
"""

from abc import ABC, abstractmethod
from typing import Optional


class ICryptoProvider(ABC):
    """Key/nonce generation and authenticated symmetric encryption."""

    @abstractmethod
    def generate_key(self) -> bytes:
        """
        Generate a fresh symmetric key.

        Raises:
            EntropyError: If the secure random source is unavailable.
        """
        pass

    @abstractmethod
    def generate_nonce(self) -> bytes:
        """Generate a single-use random value of at least 128 bits."""
        pass

    @abstractmethod
    def encrypt(self, plaintext: bytes, key: bytes,
                associated_data: Optional[bytes] = None) -> bytes:
        """Encrypt and authenticate plaintext under key."""
        pass

    @abstractmethod
    def decrypt(self, ciphertext: bytes, key: bytes,
                associated_data: Optional[bytes] = None) -> bytes:
        """
        Verify and decrypt ciphertext.

        Raises:
            DecryptionError: On tag mismatch, wrong key or malformed input.
        """
        pass

    @abstractmethod
    def derive_key(self, secret: bytes, salt: bytes, info: bytes) -> bytes:
        """Derive a key from input keying material."""
        pass
