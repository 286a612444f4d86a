"""
Main entry point for corelink.

Provides the command-line interface: the main core (``start``,
``dispatch``), helper cores (``worker``) and configuration utilities.
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

import aiohttp
import typer
import uvicorn

from .application.helper import HelperNode
from .application.runtime import CorelinkRuntime
from .core.exceptions import ConfigError, CorelinkError
from .infrastructure.config.loader import ConfigLoader
from .infrastructure.config.models import ApplicationConfig
from .infrastructure.logging.setup import setup_logging
from .presentation.api.app import create_app

cli = typer.Typer(
    name="corelink",
    help="Secure task dispatch from a main core to a pool of helper cores"
)

logger = logging.getLogger(__name__)

WORKER_TRANSPORTS = ("process", "http")


def _load_config(config_file: Optional[str],
                 overrides: Optional[Dict[str, Any]] = None) -> ApplicationConfig:
    try:
        return ConfigLoader().load_config(config_file, overrides)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


def _runtime_overrides(implementation: Optional[str], cores: Optional[int],
                       log_level: Optional[str], debug: bool) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if implementation:
        overrides.setdefault('runtime', {})['implementation'] = implementation
    if cores is not None:
        overrides.setdefault('runtime', {}).setdefault('options', {})['NumberOfCores'] = cores
    if log_level:
        overrides['logging'] = {'level': log_level}
    if debug:
        overrides['debug'] = True
        overrides['logging'] = {'level': 'DEBUG'}
    return overrides


@cli.command()
def start(
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path", envvar="CORELINK_CONFIG"
    ),
    implementation: Optional[str] = typer.Option(
        None, "--implementation", "-i", help="Helper implementation (Process or HTTPD)"
    ),
    cores: Optional[int] = typer.Option(
        None, "--cores", "-n", help="Number of helper cores"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level"
    ),
    debug: bool = typer.Option(
        False, "--debug", help="Enable debug mode"
    )
) -> None:
    """Start the main core and its helpers; runs until interrupted."""
    config = _load_config(config_file, _runtime_overrides(implementation, cores, log_level, debug))
    setup_logging(config.logging, log_name="corelink-main")

    logger.info(f"Starting {config.name} v{config.version}")
    try:
        asyncio.run(run_main(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except CorelinkError as e:
        logger.error(f"Runtime failed: {e}")
        sys.exit(1)


@cli.command()
def dispatch(
    operation: str = typer.Argument(..., help="Operation to run on a helper"),
    payload: str = typer.Option("", "--payload", "-p", help="Operation input as text"),
    target: Optional[int] = typer.Option(
        None, "--target", "-t", help="Helper core id (default: least loaded)"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Response timeout"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path", envvar="CORELINK_CONFIG"
    ),
    implementation: Optional[str] = typer.Option(
        None, "--implementation", "-i", help="Helper implementation (Process or HTTPD)"
    ),
    cores: Optional[int] = typer.Option(None, "--cores", "-n", help="Number of helper cores"),
    log_level: Optional[str] = typer.Option("WARNING", "--log-level", help="Logging level")
) -> None:
    """Start the helpers, run one operation, print its result and shut down."""
    overrides = _runtime_overrides(implementation, cores, log_level, False)
    overrides.setdefault('health', {})['enabled'] = False
    config = _load_config(config_file, overrides)
    setup_logging(config.logging, log_name="corelink-main")

    async def run_once() -> bytes:
        async with CorelinkRuntime(config) as runtime:
            return await runtime.call(operation, payload.encode('utf-8'), target, timeout)

    try:
        result = asyncio.run(run_once())
    except CorelinkError as e:
        typer.echo(f"Dispatch failed: {e.kind}: {e}", err=True)
        sys.exit(1)
    typer.echo(result.decode('utf-8', errors='replace'))


@cli.command()
def worker(
    core_id: int = typer.Option(..., "--core-id", help="Core id of this helper (1..N)"),
    transport: str = typer.Option(
        "process", "--transport", help="How to talk to the main core (process or http)"
    ),
    host: Optional[str] = typer.Option(None, "--host", help="HTTP bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="HTTP port"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path", envvar="CORELINK_CONFIG"
    )
) -> None:
    """Run a helper core (normally launched by the main core)."""
    transport = transport.lower()
    if transport not in WORKER_TRANSPORTS:
        typer.echo(f"Unknown transport {transport!r}; use process or http", err=True)
        sys.exit(2)

    overrides: Dict[str, Any] = {}
    if host:
        overrides.setdefault('server', {})['host'] = host
    if port:
        overrides.setdefault('server', {})['port'] = port
    config = _load_config(config_file, overrides)
    setup_logging(config.logging, log_name=f"corelink-core{core_id}", core_id=core_id)

    try:
        node = HelperNode(core_id, config)
    except (ValueError, ConfigError) as e:
        logger.error(f"Cannot start helper core {core_id}: {e}")
        sys.exit(1)

    try:
        if transport == "process":
            asyncio.run(run_process_worker(node))
        else:
            asyncio.run(run_http_worker(node, config))
    except KeyboardInterrupt:
        logger.info(f"Helper core {core_id} interrupted")


@cli.command()
def init_config(
    output: str = typer.Option(
        "config.yaml", "--output", "-o", help="Output configuration file"
    ),
    format: str = typer.Option(
        "yaml", "--format", "-f", help="Configuration format (yaml/json)"
    )
) -> None:
    """Generate a default configuration file."""
    try:
        ConfigLoader().save_config(ApplicationConfig(), output, format)
        typer.echo(f"Default configuration saved to {output}")
    except ConfigError as e:
        typer.echo(f"Error saving configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
def validate_config(
    config_file: str = typer.Argument(..., help="Configuration file to validate")
) -> None:
    """Validate a configuration file."""
    try:
        config = ConfigLoader(environ={}).load_config(config_file)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Configuration validation failed: {e}", err=True)
        sys.exit(1)

    options = config.runtime.options
    typer.echo(f"Configuration file {config_file} is valid")
    typer.echo(f"Implementation: {config.runtime.implementation}")
    typer.echo(f"Cores: {options.get('NumberOfCores', 2)}")
    typer.echo(f"Trust policy: {config.security.trust_policy}")


@cli.command()
def health_check(
    host: str = typer.Option("127.0.0.1", "--host", help="Helper host"),
    port: int = typer.Option(8080, "--port", help="Helper port"),
    timeout: float = typer.Option(10.0, "--timeout", help="Request timeout")
) -> None:
    """Check the health of a running HTTP helper."""

    async def check_health() -> bool:
        url = f"http://{host}:{port}/health/"
        timeout_config = aiohttp.ClientTimeout(total=timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout_config) as session:
                async with session.get(url) as response:
                    if response.status == 200:
                        data = await response.json()
                        typer.echo(
                            f"Helper core {data.get('core_id')} is {data.get('status', 'unknown')}")
                        return True
                    typer.echo(f"Helper returned status {response.status}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            typer.echo(f"Health check failed: {e}")
            return False

    if not asyncio.run(check_health()):
        sys.exit(1)


async def run_main(config: ApplicationConfig) -> None:
    """Run the main core until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    runtime = CorelinkRuntime(config)
    try:
        await runtime.start()
        status = await runtime.status()
        for core in status['cores']:
            logger.info(f"Core {core['core_id']}: {core['status']} ({core['address']})")
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await runtime.shutdown()


async def run_process_worker(node: HelperNode) -> None:
    """Serve a helper over stdin/stdout until the main core closes the pipe."""
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await node.start()
    serve_task = asyncio.create_task(node.serve_stdio())
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (serve_task, stop_task):
            task.cancel()
        await asyncio.gather(serve_task, stop_task, return_exceptions=True)
        await node.stop()


async def run_http_worker(node: HelperNode, config: ApplicationConfig) -> None:
    """Serve a helper over HTTP; uvicorn handles the signals."""
    app = create_app(node, config)
    server = uvicorn.Server(uvicorn.Config(
        app=app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower() if config.logging.level != "TRACE" else "trace",
        access_log=config.debug,
        log_config=None,
    ))
    await server.serve()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform's event loop
            pass


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
