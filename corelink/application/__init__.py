"""
Application layer: the main-core runtime and the helper node.
"""

from .helper import HelperNode
from .runtime import CorelinkRuntime

__all__ = [
    "CorelinkRuntime",
    "HelperNode",
]
