"""
Tests for configuration models and the configuration loader.
"""

import json
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml

from corelink.core.domain.cores import TransportKind
from corelink.core.exceptions import ConfigError
from corelink.infrastructure.config.loader import ConfigLoader
from corelink.infrastructure.config.models import (
    ApplicationConfig, DispatchConfig, HealthConfig, LoggingConfig, RuntimeConfig,
    SecurityConfig, ServerConfig
)


class TestConfigModels:
    """Test cases for configuration sections."""

    def test_defaults(self) -> None:
        config = ApplicationConfig()

        assert config.name == "corelink"
        assert config.runtime.kind is TransportKind.PROCESS
        assert config.runtime.options == {'NumberOfCores': 2}
        assert config.security.trust_policy == "tofu"
        assert config.security.effective_secret is None
        assert config.dispatch.retry_attempts == 3
        assert config.health.enabled is True
        assert config.logging.file_enabled is False

    @pytest.mark.parametrize("value,expected", [
        ("process", "Process"),
        ("HTTPD", "HTTPD"),
        ("httpd", "HTTPD"),
    ])
    def test_implementation_is_normalized(self, value: str, expected: str) -> None:
        assert RuntimeConfig(implementation=value).implementation == expected

    def test_unknown_implementation(self) -> None:
        with pytest.raises(ConfigError, match="Unsupported implementation"):
            RuntimeConfig(implementation="Carrier Pigeon")

    def test_pre_shared_needs_secret(self) -> None:
        with pytest.raises(ConfigError):
            SecurityConfig(trust_policy="pre_shared")

        security = SecurityConfig(trust_policy="PRE_SHARED", bootstrap_secret="s3cret")
        assert security.trust_policy == "pre_shared"
        assert security.effective_secret == "s3cret"

    def test_tofu_ignores_secret(self) -> None:
        assert SecurityConfig(bootstrap_secret="unused").effective_secret is None

    @pytest.mark.parametrize("factory", [
        lambda: SecurityConfig(trust_policy="trust_everyone"),
        lambda: SecurityConfig(key_grace_period=-1),
        lambda: DispatchConfig(retry_attempts=0),
        lambda: DispatchConfig(request_timeout=0),
        lambda: HealthConfig(failure_threshold=0),
        lambda: HealthConfig(load_ceiling=0),
        lambda: ServerConfig(port=70000),
        lambda: LoggingConfig(level="CHATTY"),
    ])
    def test_invalid_values(self, factory: Any) -> None:
        with pytest.raises(ConfigError):
            factory()

    def test_log_level_is_uppercased(self) -> None:
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_probe_timeout_must_fit_failure_window(self) -> None:
        with pytest.raises(ConfigError, match="probe_timeout"):
            ApplicationConfig(health=HealthConfig(interval=1.0, failure_threshold=2,
                                                  probe_timeout=2.0))

    def test_from_dict_rejects_unknown_sections(self) -> None:
        with pytest.raises(ConfigError, match="tcp"):
            ApplicationConfig.from_dict({'tcp': {'port': 1}})

    def test_from_dict_rejects_unknown_keys(self) -> None:
        with pytest.raises(ConfigError, match="dispatch"):
            ApplicationConfig.from_dict({'dispatch': {'retries': 5}})

    def test_dict_round_trip(self) -> None:
        config = ApplicationConfig(
            runtime=RuntimeConfig(implementation="HTTPD", options={'NumberOfCores': 4, 'Port': 9100}),
            security=SecurityConfig(trust_policy="pre_shared", bootstrap_secret="s3cret"))

        data = config.to_dict()
        assert 'config_file_path' not in data
        assert ApplicationConfig.from_dict(data) == config


class TestConfigLoader:
    """Test cases for ConfigLoader."""

    @pytest.fixture
    def sample_config(self) -> Dict[str, Any]:
        return {
            'debug': True,
            'runtime': {
                'implementation': 'HTTPD',
                'options': {'NumberOfCores': 3, 'Port': 9200},
            },
            'dispatch': {'request_timeout': 5.0},
            'logging': {'level': 'debug'},
        }

    def test_load_defaults(self) -> None:
        config = ConfigLoader(environ={}).load_config()
        assert config == ApplicationConfig()
        assert config.config_file_path is None

    def test_load_yaml(self, tmp_path: Path, sample_config: Dict[str, Any]) -> None:
        path = tmp_path / "corelink.yaml"
        path.write_text(yaml.safe_dump(sample_config))

        config = ConfigLoader(environ={}).load_config(str(path))

        assert config.debug is True
        assert config.runtime.implementation == "HTTPD"
        assert config.runtime.options == {'NumberOfCores': 3, 'Port': 9200}
        assert config.dispatch.request_timeout == 5.0
        assert config.dispatch.retry_attempts == 3
        assert config.logging.level == "DEBUG"
        assert config.config_file_path == str(path)

    def test_load_json(self, tmp_path: Path, sample_config: Dict[str, Any]) -> None:
        path = tmp_path / "corelink.json"
        path.write_text(json.dumps(sample_config))
        assert ConfigLoader(environ={}).load_config(str(path)).runtime.options['Port'] == 9200

    def test_empty_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("")
        config = ConfigLoader(environ={}).load_config(str(path))
        assert config.to_dict() == ApplicationConfig().to_dict()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            ConfigLoader(environ={}).load_config(str(tmp_path / "absent.yaml"))

    def test_unsupported_format(self, tmp_path: Path) -> None:
        path = tmp_path / "corelink.toml"
        path.write_text("debug = true")
        with pytest.raises(ConfigError, match="Unsupported"):
            ConfigLoader(environ={}).load_config(str(path))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("runtime: [unclosed")
        with pytest.raises(ConfigError):
            ConfigLoader(environ={}).load_config(str(path))

    def test_non_mapping_file(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigLoader(environ={}).load_config(str(path))

    def test_environment_overrides_file(self, tmp_path: Path,
                                        sample_config: Dict[str, Any]) -> None:
        path = tmp_path / "corelink.yaml"
        path.write_text(yaml.safe_dump(sample_config))
        environ = {
            'CORELINK_NUMBER_OF_CORES': '6',
            'CORELINK_TRUST_POLICY': 'pre_shared',
            'CORELINK_BOOTSTRAP_SECRET': 's3cret',
            'CORELINK_OPERATION_MODULES': 'ops.images, ops.text',
            'CORELINK_LOG_FILE_ENABLED': 'yes',
            'CORELINK_LOAD_CEILING': 'none',
            'UNRELATED': 'ignored',
        }

        config = ConfigLoader(environ=environ).load_config(str(path))

        assert config.runtime.options == {'NumberOfCores': 6, 'Port': 9200}
        assert config.runtime.operation_modules == ["ops.images", "ops.text"]
        assert config.security.effective_secret == "s3cret"
        assert config.logging.file_enabled is True
        assert config.health.load_ceiling is None

    def test_overrides_apply_last(self) -> None:
        loader = ConfigLoader(environ={'CORELINK_IMPLEMENTATION': 'HTTPD'})
        config = loader.load_config(overrides={'runtime': {'implementation': 'Process'}})
        assert config.runtime.implementation == "Process"

    def test_custom_prefix(self) -> None:
        loader = ConfigLoader(environ={'APP_DEBUG': 'true'}, env_prefix="APP_")
        assert loader.load_config().debug is True

    def test_invalid_environment_value(self) -> None:
        with pytest.raises(ConfigError, match="CORELINK_RETRY_ATTEMPTS"):
            ConfigLoader(environ={'CORELINK_RETRY_ATTEMPTS': 'many'}).load_config()

    @pytest.mark.parametrize("fmt,name", [("yaml", "saved.yaml"), ("json", "saved.json")])
    def test_save_and_reload(self, tmp_path: Path, fmt: str, name: str) -> None:
        loader = ConfigLoader(environ={})
        config = ApplicationConfig(
            debug=True, dispatch=DispatchConfig(request_timeout=12.5, retry_attempts=5))
        path = tmp_path / "nested" / name

        loader.save_config(config, str(path), fmt)
        reloaded = loader.load_config(str(path))

        assert reloaded.dispatch.request_timeout == 12.5
        assert reloaded.dispatch.retry_attempts == 5
        assert reloaded.debug is True

    def test_save_unsupported_format(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError):
            ConfigLoader(environ={}).save_config(
                ApplicationConfig(), str(tmp_path / "out.ini"), "ini")
