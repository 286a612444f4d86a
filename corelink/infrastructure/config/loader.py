"""
Configuration loading and saving utilities.

Configuration comes from an optional YAML or JSON file, overridden by
``CORELINK_*`` environment variables.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from ...core.exceptions import ConfigError
from .models import ApplicationConfig

ENV_PREFIX = "CORELINK_"


def _parse_bool(value: str) -> bool:
    """Parse boolean value from string."""
    return value.strip().lower() in ('true', '1', 'yes', 'on', 'enabled')


def _optional_int(value: str) -> Optional[int]:
    return None if value.strip().lower() in ('', 'none', 'null') else int(value)


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


# environment suffix -> (dotted config path, converter)
ENV_MAPPINGS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    'DEBUG': ('debug', _parse_bool),
    'IMPLEMENTATION': ('runtime.implementation', str),
    'NUMBER_OF_CORES': ('runtime.options.NumberOfCores', int),
    'PORT': ('runtime.options.Port', int),
    'HOST': ('runtime.options.Host', str),
    'SPAWN_WORKERS': ('runtime.options.SpawnWorkers', _parse_bool),
    'OPERATION_MODULES': ('runtime.operation_modules', _parse_list),
    'TRUST_POLICY': ('security.trust_policy', str),
    'BOOTSTRAP_SECRET': ('security.bootstrap_secret', str),
    'KEY_GRACE_PERIOD': ('security.key_grace_period', float),
    'REQUEST_TIMEOUT': ('dispatch.request_timeout', float),
    'RETRY_ATTEMPTS': ('dispatch.retry_attempts', int),
    'HEALTH_INTERVAL': ('health.interval', float),
    'FAILURE_THRESHOLD': ('health.failure_threshold', int),
    'LOAD_CEILING': ('health.load_ceiling', _optional_int),
    'LOG_LEVEL': ('logging.level', str),
    'LOG_DIR': ('logging.log_directory', str),
    'LOG_FILE_ENABLED': ('logging.file_enabled', _parse_bool),
}


class ConfigLoader:
    """Configuration loader supporting YAML, JSON and environment overrides."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None,
                 env_prefix: str = ENV_PREFIX) -> None:
        self._environ = environ if environ is not None else os.environ
        self._env_prefix = env_prefix

    def load_config(self, config_file: Optional[str] = None,
                    overrides: Optional[Dict[str, Any]] = None) -> ApplicationConfig:
        """
        Load configuration from file and environment variables.

        Args:
            config_file: Path to configuration file (optional)
            overrides: Values applied last, e.g. from command line flags

        Returns:
            Loaded and validated configuration

        Raises:
            FileNotFoundError: If the configuration file does not exist
            ConfigError: If the configuration is malformed or invalid
        """
        config_data: Dict[str, Any] = {}

        if config_file:
            config_data = self._load_from_file(config_file)

        config_data = self._merge_configs(config_data, self._load_from_environment())
        if overrides:
            config_data = self._merge_configs(config_data, overrides)

        config = ApplicationConfig.from_dict(config_data)
        config.config_file_path = config_file
        return config

    def save_config(self, config: ApplicationConfig, file_path: str, format: str = "yaml") -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            file_path: Output file path
            format: File format (yaml or json)
        """
        config_data = config.to_dict()
        path = Path(file_path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(path, 'w', encoding='utf-8') as f:
                if format.lower() == "yaml":
                    yaml.safe_dump(config_data, f, default_flow_style=False, indent=2,
                                   sort_keys=False)
                elif format.lower() == "json":
                    json.dump(config_data, f, indent=2)
                else:
                    raise ConfigError(f"Unsupported format: {format}")
        except OSError as e:
            raise ConfigError(f"Error writing {file_path}: {e}")

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        suffix = path.suffix.lower()
        try:
            with open(path, 'r', encoding='utf-8') as f:
                if suffix in ('.yaml', '.yml'):
                    data = yaml.safe_load(f) or {}
                elif suffix == '.json':
                    data = json.load(f)
                else:
                    raise ConfigError(f"Unsupported configuration file format: {path.suffix}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {file_path}: {e}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {file_path}: {e}")
        except OSError as e:
            raise ConfigError(f"Error reading {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {file_path} must contain a mapping")
        return data

    def _load_from_environment(self) -> Dict[str, Any]:
        """Load configuration overrides from environment variables."""
        config: Dict[str, Any] = {}

        for suffix, (config_path, converter) in ENV_MAPPINGS.items():
            env_var = f"{self._env_prefix}{suffix}"
            value = self._environ.get(env_var)
            if value is None:
                continue
            try:
                self._set_nested_value(config, config_path, converter(value))
            except (ValueError, TypeError) as e:
                raise ConfigError(f"Invalid value for {env_var}: {value} ({e})")

        return config

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation."""
        keys = path.split('.')
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result
