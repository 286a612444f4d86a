"""
HTTP transport: one FastAPI server per helper core, reached with aiohttp.

    send     POST /dispatch              202 once the frame is queued
    receive  GET  /dispatch/outbox?wait  200 with one frame, 204 when idle
    alive    GET  /health/live           200

Helpers are optionally launched as local processes (``SpawnWorkers``);
otherwise they are expected to be running already.
"""

import asyncio
import logging
import time
from typing import Dict, Mapping, Optional

import aiohttp

from ...core.domain.cores import TransportKind
from ...core.exceptions import TransportError
from .base import BaseTransport
from .framing import MAX_FRAME_SIZE

logger = logging.getLogger(__name__)

DEFAULT_POLL_WAIT = 10.0
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_STARTUP_TIMEOUT = 15.0
LIVENESS_TIMEOUT = 2.0


class HttpTransport(BaseTransport):
    """Reach helper cores through their HTTP servers."""

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        poll_wait: float = DEFAULT_POLL_WAIT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        max_frame_size: int = MAX_FRAME_SIZE
    ) -> None:
        super().__init__(env)
        self._poll_wait = poll_wait
        self._request_timeout = request_timeout
        self._startup_timeout = startup_timeout
        self._max_frame_size = max_frame_size
        self._session: Optional[aiohttp.ClientSession] = None
        self._processes: Dict[int, asyncio.subprocess.Process] = {}

    @property
    def kind(self) -> TransportKind:
        return TransportKind.HTTPD

    async def start(self) -> None:
        if self._running:
            return

        logger.info(f"Starting HTTP transport for {len(self._cores)} core(s)")
        self._session = aiohttp.ClientSession()
        self._running = True
        try:
            for core_id in sorted(self._cores):
                if self._cores[core_id].command:
                    self._processes[core_id] = await self._spawn(self._cores[core_id], pipes=False)
        except TransportError:
            await self.stop()
            raise

        await asyncio.gather(*(self._wait_until_live(core_id) for core_id in sorted(self._cores)))

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping HTTP transport...")
        self._running = False
        if self._session is not None:
            await self._session.close()
            self._session = None

        processes, self._processes = self._processes, {}
        await asyncio.gather(
            *(self._terminate(process, core_id) for core_id, process in processes.items()),
            return_exceptions=True)
        logger.info("HTTP transport stopped")

    async def send(self, core_id: int, data: bytes) -> None:
        if len(data) > self._max_frame_size:
            raise TransportError(
                f"Frame of {len(data)} bytes exceeds the {self._max_frame_size} byte limit",
                core_id=core_id)

        url = f"{self.core(core_id).base_url}/dispatch"
        session = self._require_session(core_id)
        try:
            async with session.post(
                url,
                data=data,
                headers={'Content-Type': 'application/json'},
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as response:
                if response.status != 202:
                    detail = await response.text()
                    self._metrics.record_error(f"HTTP {response.status}", sending=True)
                    raise TransportError(
                        f"Helper rejected frame with HTTP {response.status}: {detail[:200]}",
                        retryable=response.status >= 500,
                        core_id=core_id)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._metrics.record_error(str(e), sending=True)
            raise TransportError(f"POST {url} failed: {e}", retryable=True, core_id=core_id)
        self._metrics.record_sent(len(data))

    async def receive(self, core_id: int) -> bytes:
        url = f"{self.core(core_id).base_url}/dispatch/outbox"
        while True:
            session = self._require_session(core_id)
            try:
                async with session.get(
                    url,
                    params={'wait': str(self._poll_wait)},
                    timeout=aiohttp.ClientTimeout(total=self._poll_wait + self._request_timeout),
                ) as response:
                    if response.status == 204:
                        continue
                    if response.status != 200:
                        self._metrics.record_error(f"HTTP {response.status}", sending=False)
                        raise TransportError(
                            f"Outbox poll failed with HTTP {response.status}",
                            retryable=True, core_id=core_id)
                    data = await response.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self._metrics.record_error(str(e), sending=False)
                raise TransportError(f"GET {url} failed: {e}", retryable=True, core_id=core_id)

            self._metrics.record_received(len(data))
            return data

    async def is_alive(self, core_id: int) -> bool:
        if self._session is None or core_id not in self._cores:
            return False
        process = self._processes.get(core_id)
        if process is not None and process.returncode is not None:
            return False
        try:
            async with self._session.get(
                f"{self._cores[core_id].base_url}/health/live",
                timeout=aiohttp.ClientTimeout(total=LIVENESS_TIMEOUT),
            ) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def restart(self, core_id: int) -> None:
        core = self.core(core_id)
        process = self._processes.pop(core_id, None)
        if process is not None:
            await self._terminate(process, core_id)
        if core.command:
            self._processes[core_id] = await self._spawn(core, pipes=False)
            await self._wait_until_live(core_id)
        else:
            logger.warning(f"Core {core_id} is not managed by us; nothing to restart")
        self._metrics.restarts += 1

    def _require_session(self, core_id: int) -> aiohttp.ClientSession:
        if self._session is None:
            raise TransportError("HTTP transport is not running", core_id=core_id)
        return self._session

    async def _wait_until_live(self, core_id: int) -> bool:
        deadline = time.monotonic() + self._startup_timeout
        while time.monotonic() < deadline:
            if await self.is_alive(core_id):
                logger.info(f"Helper for core {core_id} is live at {self._cores[core_id].address}")
                return True
            await asyncio.sleep(0.2)
        logger.warning(f"Helper for core {core_id} not live after {self._startup_timeout}s")
        return False
