"""
Named operations a helper core can execute.

Handlers take the request payload and return result bytes. Both plain
functions and coroutine functions are accepted; plain functions run in
the default executor so a slow handler never blocks the event loop.
"""

import asyncio
import hashlib
import importlib
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Union

from ..exceptions import ConfigError, CorelinkError, RemoteOperationError, UnknownOperationError

logger = logging.getLogger(__name__)

OperationHandler = Callable[[bytes], Union[bytes, Awaitable[bytes]]]

MAX_SLEEP_SECONDS = 60.0


class OperationRegistry:
    """Maps operation names to handlers and runs them."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._handlers: Dict[str, OperationHandler] = {}
        self._metrics: Dict[str, Any] = {
            'executed': 0,
            'failed': 0,
            'avg_execution_time': 0.0,
        }
        if include_builtins:
            register_builtins(self)

    def register(self, name: str, handler: OperationHandler, replace: bool = False) -> None:
        """
        Register a handler under a name.

        Raises:
            ValueError: If the name is empty or taken and ``replace`` is False
        """
        if not name:
            raise ValueError("Operation name cannot be empty")
        if name in self._handlers and not replace:
            raise ValueError(f"Operation already registered: {name}")
        self._handlers[name] = handler
        logger.debug(f"Registered operation {name}")

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def get_metrics(self) -> Dict[str, Any]:
        return self._metrics.copy()

    async def execute(self, name: str, payload: bytes) -> bytes:
        """
        Run an operation.

        Raises:
            UnknownOperationError: If no handler is registered under ``name``
            RemoteOperationError: If the handler failed or returned non-bytes
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownOperationError(f"Unknown operation: {name}")

        start_time = time.time()
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(payload)
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, handler, payload)
                if inspect.isawaitable(result):
                    result = await result
        except CorelinkError:
            self._metrics['failed'] += 1
            raise
        except Exception as e:
            self._metrics['failed'] += 1
            logger.error(f"Operation {name} failed: {e}")
            raise RemoteOperationError(f"Operation {name} failed: {e}")

        if isinstance(result, str):
            result = result.encode('utf-8')
        if not isinstance(result, (bytes, bytearray)):
            self._metrics['failed'] += 1
            raise RemoteOperationError(
                f"Operation {name} returned {type(result).__name__}, expected bytes")

        elapsed = time.time() - start_time
        executed = self._metrics['executed'] + 1
        self._metrics['executed'] = executed
        self._metrics['avg_execution_time'] += (
            elapsed - self._metrics['avg_execution_time']) / executed
        return bytes(result)

    def load_modules(self, module_names: Iterable[str]) -> List[str]:
        """
        Import modules and let each register its operations.

        Every module must expose ``register(registry)``.

        Returns:
            Names of the modules that were loaded

        Raises:
            ConfigError: If a module cannot be imported or has no register()
        """
        loaded = []
        for module_name in module_names:
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                raise ConfigError(f"Cannot import operation module {module_name}: {e}")

            register = getattr(module, 'register', None)
            if not callable(register):
                raise ConfigError(f"Operation module {module_name} has no register() function")

            register(self)
            loaded.append(module_name)
            logger.info(f"Loaded operations from {module_name}")
        return loaded


def _echo(payload: bytes) -> bytes:
    return payload


def _sha256(payload: bytes) -> bytes:
    return hashlib.sha256(payload).hexdigest().encode('ascii')


async def _sleep(payload: bytes) -> bytes:
    """Sleep for the number of seconds given as the payload text."""
    text = payload.decode('utf-8', errors='replace').strip() or "0"
    try:
        seconds = float(text)
    except ValueError:
        raise RemoteOperationError(f"sleep expects a number of seconds, got {text!r}")
    seconds = max(0.0, min(seconds, MAX_SLEEP_SECONDS))
    await asyncio.sleep(seconds)
    return payload


def register_builtins(registry: OperationRegistry) -> None:
    registry.register('echo', _echo, replace=True)
    registry.register('sha256', _sha256, replace=True)
    registry.register('sleep', _sleep, replace=True)
