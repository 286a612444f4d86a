"""
Configuration management: dataclass models plus file/environment loading.
"""

from .loader import ConfigLoader
from .models import (
    ApplicationConfig, DispatchConfig, HealthConfig, LoggingConfig,
    RuntimeConfig, SecurityConfig, ServerConfig
)

__all__ = [
    "ApplicationConfig",
    "ConfigLoader",
    "DispatchConfig",
    "HealthConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "SecurityConfig",
    "ServerConfig",
]
