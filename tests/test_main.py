"""
Tests for the command-line interface.
"""

import socket
from pathlib import Path
from typing import Any, Optional
from unittest.mock import Mock, patch

import yaml
from typer.testing import CliRunner

from corelink.core.exceptions import NoCoreAvailableError
from corelink.infrastructure.config.models import ApplicationConfig
from corelink.main import cli


class FakeRuntime:
    """Stands in for CorelinkRuntime without launching helpers."""

    calls: list = []
    error: Optional[Exception] = None

    def __init__(self, config: ApplicationConfig) -> None:
        self.config = config

    async def __aenter__(self) -> 'FakeRuntime':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        pass

    async def call(self, operation: str, payload: bytes, target: Optional[int],
                   timeout: Optional[float]) -> bytes:
        FakeRuntime.calls.append((operation, payload, target, timeout, self.config))
        if FakeRuntime.error is not None:
            raise FakeRuntime.error
        return payload.upper()


class TestMainCLI:
    """Test cases for the CLI commands."""

    def setup_method(self) -> None:
        self.runner = CliRunner()
        FakeRuntime.calls = []
        FakeRuntime.error = None

    def test_help(self) -> None:
        result = self.runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Secure task dispatch" in result.output
        for command in ("start", "dispatch", "worker", "init-config", "validate-config"):
            assert command in result.output

    @patch('corelink.main.ConfigLoader')
    @patch('corelink.main.setup_logging')
    @patch('corelink.main.asyncio.run')
    def test_start(self, mock_run: Mock, mock_setup_logging: Mock,
                   mock_config_loader: Mock) -> None:
        mock_config_loader.return_value.load_config.return_value = ApplicationConfig()
        mock_run.side_effect = lambda coro: coro.close()

        result = self.runner.invoke(cli, ["start"])

        assert result.exit_code == 0
        mock_setup_logging.assert_called_once()
        mock_run.assert_called_once()

    @patch('corelink.main.ConfigLoader')
    @patch('corelink.main.setup_logging')
    @patch('corelink.main.asyncio.run')
    def test_start_with_options(self, mock_run: Mock, mock_setup_logging: Mock,
                                mock_config_loader: Mock) -> None:
        loader = mock_config_loader.return_value
        loader.load_config.return_value = ApplicationConfig()
        mock_run.side_effect = lambda coro: coro.close()

        result = self.runner.invoke(cli, [
            "start", "--config", "corelink.yaml", "--implementation", "HTTPD",
            "--cores", "4", "--debug"
        ])

        assert result.exit_code == 0
        config_file, overrides = loader.load_config.call_args[0]
        assert config_file == "corelink.yaml"
        assert overrides == {
            'runtime': {'implementation': 'HTTPD', 'options': {'NumberOfCores': 4}},
            'debug': True,
            'logging': {'level': 'DEBUG'},
        }

    def test_start_with_missing_config(self, tmp_path: Path) -> None:
        result = self.runner.invoke(cli, ["start", "--config", str(tmp_path / "absent.yaml")])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    @patch('corelink.main.setup_logging')
    @patch('corelink.main.CorelinkRuntime', FakeRuntime)
    def test_dispatch(self, mock_setup_logging: Mock) -> None:
        result = self.runner.invoke(cli, [
            "dispatch", "echo", "--payload", "hello", "--target", "2", "--cores", "3"
        ])

        assert result.exit_code == 0
        assert "HELLO" in result.output
        operation, payload, target, timeout, config = FakeRuntime.calls[0]
        assert (operation, payload, target, timeout) == ("echo", b"hello", 2, None)
        assert config.runtime.options['NumberOfCores'] == 3
        assert config.health.enabled is False

    @patch('corelink.main.setup_logging')
    @patch('corelink.main.CorelinkRuntime', FakeRuntime)
    def test_dispatch_failure(self, mock_setup_logging: Mock) -> None:
        FakeRuntime.error = NoCoreAvailableError("No trusted core")

        result = self.runner.invoke(cli, ["dispatch", "echo"])

        assert result.exit_code == 1
        assert "Dispatch failed: NoCoreAvailableError" in result.output

    def test_worker_rejects_unknown_transport(self) -> None:
        result = self.runner.invoke(cli, ["worker", "--core-id", "1", "--transport", "pigeon"])
        assert result.exit_code == 2
        assert "Unknown transport" in result.output

    @patch('corelink.main.setup_logging')
    def test_worker_rejects_main_core_id(self, mock_setup_logging: Mock) -> None:
        result = self.runner.invoke(cli, ["worker", "--core-id", "0"])
        assert result.exit_code == 1


class TestConfigCommands:
    """Test cases for the configuration utilities."""

    def setup_method(self) -> None:
        self.runner = CliRunner()

    def test_init_and_validate(self, tmp_path: Path) -> None:
        path = tmp_path / "corelink.yaml"

        result = self.runner.invoke(cli, ["init-config", "--output", str(path)])
        assert result.exit_code == 0
        assert "Default configuration saved" in result.output
        assert yaml.safe_load(path.read_text())['runtime']['implementation'] == "Process"

        result = self.runner.invoke(cli, ["validate-config", str(path)])
        assert result.exit_code == 0
        assert "is valid" in result.output
        assert "Implementation: Process" in result.output
        assert "Trust policy: tofu" in result.output

    def test_init_json(self, tmp_path: Path) -> None:
        path = tmp_path / "corelink.json"
        result = self.runner.invoke(cli, ["init-config", "-o", str(path), "-f", "json"])
        assert result.exit_code == 0
        assert path.exists()

    def test_init_unsupported_format(self, tmp_path: Path) -> None:
        result = self.runner.invoke(
            cli, ["init-config", "-o", str(tmp_path / "c.ini"), "-f", "ini"])
        assert result.exit_code == 1

    def test_validate_missing_file(self, tmp_path: Path) -> None:
        result = self.runner.invoke(cli, ["validate-config", str(tmp_path / "absent.yaml")])
        assert result.exit_code == 1
        assert "validation failed" in result.output

    def test_validate_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("security:\n  trust_policy: pre_shared\n")
        result = self.runner.invoke(cli, ["validate-config", str(path)])
        assert result.exit_code == 1
        assert "bootstrap_secret" in result.output


class TestHealthCheckCommand:
    """Test cases for the health-check command."""

    def test_unreachable_helper(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        result = CliRunner().invoke(
            cli, ["health-check", "--port", str(port), "--timeout", "2"])

        assert result.exit_code == 1
        assert "Health check failed" in result.output
