"""
Security infrastructure: crypto provider and node identity.
"""

from .crypto import CryptoProvider
from .identity import MAIN_CORE_ID, NodeIdentity, derive_fingerprint

__all__ = [
    "CryptoProvider",
    "MAIN_CORE_ID",
    "NodeIdentity",
    "derive_fingerprint",
]
