"""
Configuration models and data structures.

Every section validates itself on construction and raises ConfigError,
so an invalid setup is rejected before any helper is launched.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

from ...core.domain.cores import TransportKind
from ...core.exceptions import ConfigError

TRUST_POLICIES = ("tofu", "pre_shared")
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

_Section = TypeVar('_Section')


@dataclass
class RuntimeConfig:
    """Helper pool configuration: implementation type plus options."""
    implementation: str = "Process"
    options: Dict[str, Any] = field(default_factory=lambda: {'NumberOfCores': 2})
    operation_modules: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        try:
            self.implementation = TransportKind.parse(self.implementation).value
        except ValueError as e:
            raise ConfigError(str(e))
        if not isinstance(self.options, dict):
            raise ConfigError("runtime.options must be a mapping")

    @property
    def kind(self) -> TransportKind:
        return TransportKind.parse(self.implementation)


@dataclass
class SecurityConfig:
    """Trust policy and session-key lifecycle."""
    trust_policy: str = "tofu"
    bootstrap_secret: Optional[str] = None
    session_key_max_age: Optional[float] = 3600.0
    session_key_max_uses: Optional[int] = None
    key_grace_period: float = 30.0
    nonce_history_size: int = 4096

    def __post_init__(self) -> None:
        self.trust_policy = str(self.trust_policy).lower()
        if self.trust_policy not in TRUST_POLICIES:
            raise ConfigError(
                f"trust_policy must be one of {', '.join(TRUST_POLICIES)}, "
                f"got {self.trust_policy!r}")
        if self.trust_policy == "pre_shared" and not self.bootstrap_secret:
            raise ConfigError("trust_policy 'pre_shared' requires a bootstrap_secret")
        if self.session_key_max_age is not None and self.session_key_max_age <= 0:
            raise ConfigError("session_key_max_age must be positive")
        if self.session_key_max_uses is not None and self.session_key_max_uses < 1:
            raise ConfigError("session_key_max_uses must be at least 1")
        if self.key_grace_period < 0:
            raise ConfigError("key_grace_period cannot be negative")
        if self.nonce_history_size < 1:
            raise ConfigError("nonce_history_size must be at least 1")

    @property
    def effective_secret(self) -> Optional[str]:
        """Bootstrap secret in force; TOFU ignores any configured secret."""
        return self.bootstrap_secret if self.trust_policy == "pre_shared" else None


@dataclass
class DispatchConfig:
    """Request dispatch timing and retry policy."""
    request_timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 0.2
    retention_window: float = 300.0
    handshake_timeout: float = 10.0

    def __post_init__(self) -> None:
        _positive("dispatch.request_timeout", self.request_timeout)
        _positive("dispatch.handshake_timeout", self.handshake_timeout)
        _positive("dispatch.retention_window", self.retention_window)
        if self.retry_attempts < 1:
            raise ConfigError("dispatch.retry_attempts must be at least 1")
        if self.retry_delay < 0:
            raise ConfigError("dispatch.retry_delay cannot be negative")


@dataclass
class HealthConfig:
    """Health monitor configuration."""
    enabled: bool = True
    interval: float = 5.0
    failure_threshold: int = 3
    probe_timeout: float = 2.0
    load_ceiling: Optional[int] = None
    auto_handshake: bool = True

    def __post_init__(self) -> None:
        _positive("health.interval", self.interval)
        _positive("health.probe_timeout", self.probe_timeout)
        if self.failure_threshold < 1:
            raise ConfigError("health.failure_threshold must be at least 1")
        if self.load_ceiling is not None and self.load_ceiling < 1:
            raise ConfigError("health.load_ceiling must be at least 1")


@dataclass
class ServerConfig:
    """HTTP helper server and the main core's polling of it."""
    host: str = "127.0.0.1"
    port: int = 8080
    outbox_wait_max: float = 30.0
    poll_wait: float = 10.0
    startup_timeout: float = 15.0

    def __post_init__(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ConfigError(f"server.port must be between 1 and 65535, got {self.port}")
        _positive("server.outbox_wait_max", self.outbox_wait_max)
        _positive("server.poll_wait", self.poll_wait)
        _positive("server.startup_timeout", self.startup_timeout)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    log_directory: str = "logs"
    max_file_size: str = "10 MB"
    backup_count: int = 5
    console_enabled: bool = True
    file_enabled: bool = False

    def __post_init__(self) -> None:
        self.level = str(self.level).upper()
        if self.level not in LOG_LEVELS:
            raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")
        if self.backup_count < 0:
            raise ConfigError("logging.backup_count cannot be negative")


@dataclass
class ApplicationConfig:
    """Main application configuration."""

    name: str = "corelink"
    version: str = "0.1.0"
    debug: bool = False

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    config_file_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.health.probe_timeout >= self.health.interval * self.health.failure_threshold:
            raise ConfigError(
                "health.probe_timeout must be shorter than interval * failure_threshold")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data = asdict(self)
        data.pop('config_file_path', None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApplicationConfig':
        """Create configuration from dictionary."""
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")

        return cls(
            name=data.get('name', 'corelink'),
            version=data.get('version', '0.1.0'),
            debug=bool(data.get('debug', False)),
            runtime=_section(RuntimeConfig, data, 'runtime'),
            security=_section(SecurityConfig, data, 'security'),
            dispatch=_section(DispatchConfig, data, 'dispatch'),
            health=_section(HealthConfig, data, 'health'),
            server=_section(ServerConfig, data, 'server'),
            logging=_section(LoggingConfig, data, 'logging'),
            config_file_path=data.get('config_file_path'),
        )


def _section(section_type: Type[_Section], data: Dict[str, Any], key: str) -> _Section:
    values = data.get(key) or {}
    if not isinstance(values, dict):
        raise ConfigError(f"Configuration section {key} must be a mapping")
    try:
        return section_type(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid {key} configuration: {e}")


def _positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
