"""
API router modules of the HTTP helper.
"""

from . import dispatch, health

__all__ = [
    "dispatch",
    "health",
]
