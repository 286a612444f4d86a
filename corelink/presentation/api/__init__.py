"""
REST API of HTTP helper cores.
"""

from .app import create_app
from .dependencies import get_config, get_node

__all__ = [
    "create_app",
    "get_config",
    "get_node",
]
