"""
Process transport: one long-lived child process per helper core.

Frames travel over the child's stdin (to the helper) and stdout (from the
helper). The helper's stderr is inherited so its log output shows up next
to ours.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from ...core.domain.cores import TransportKind
from ...core.exceptions import HelperCrashError, MessageFormatError, TransportError
from .base import BaseTransport
from .framing import MAX_FRAME_SIZE, read_frame, write_frame

logger = logging.getLogger(__name__)


@dataclass
class _Channel:
    process: asyncio.subprocess.Process
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class ProcessTransport(BaseTransport):
    """Reach helper cores through spawned local processes."""

    def __init__(self, env: Optional[Mapping[str, str]] = None,
                 max_frame_size: int = MAX_FRAME_SIZE) -> None:
        super().__init__(env)
        self._max_frame_size = max_frame_size
        self._channels: Dict[int, _Channel] = {}

    @property
    def kind(self) -> TransportKind:
        return TransportKind.PROCESS

    async def start(self) -> None:
        if self._running:
            return

        logger.info(f"Starting process transport for {len(self._cores)} core(s)")
        self._running = True
        try:
            for core_id in sorted(self._cores):
                await self._launch(core_id)
        except TransportError:
            await self.stop()
            raise

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping process transport...")
        self._running = False
        channels, self._channels = self._channels, {}
        await asyncio.gather(
            *(self._close(core_id, channel) for core_id, channel in channels.items()),
            return_exceptions=True)
        logger.info("Process transport stopped")

    async def send(self, core_id: int, data: bytes) -> None:
        channel = self._channel(core_id)
        if not channel.alive or channel.process.stdin is None:
            self._metrics.record_error("helper exited", sending=True)
            raise HelperCrashError(
                f"Helper exited with code {channel.process.returncode}", core_id=core_id)

        async with channel.write_lock:
            try:
                await write_frame(channel.process.stdin, data, self._max_frame_size, core_id)
            except TransportError as e:
                self._metrics.record_error(str(e), sending=True)
                raise
        self._metrics.record_sent(len(data))

    async def receive(self, core_id: int) -> bytes:
        channel = self._channel(core_id)
        if channel.process.stdout is None:
            raise TransportError("Helper has no output pipe", core_id=core_id)

        try:
            data = await read_frame(channel.process.stdout, self._max_frame_size, core_id)
        except MessageFormatError as e:
            # the stream is out of sync; only a restart recovers it
            self._metrics.record_error(str(e), sending=False)
            raise TransportError(f"Corrupt frame from helper: {e}", core_id=core_id)
        except TransportError as e:
            self._metrics.record_error(str(e), sending=False)
            raise
        self._metrics.record_received(len(data))
        return data

    async def is_alive(self, core_id: int) -> bool:
        channel = self._channels.get(core_id)
        return channel is not None and channel.alive

    async def restart(self, core_id: int) -> None:
        self.core(core_id)
        channel = self._channels.pop(core_id, None)
        if channel is not None:
            await self._close(core_id, channel)
        await self._launch(core_id)
        self._metrics.restarts += 1
        logger.info(f"Restarted helper for core {core_id}")

    def pid(self, core_id: int) -> Optional[int]:
        channel = self._channels.get(core_id)
        return channel.process.pid if channel else None

    def _channel(self, core_id: int) -> _Channel:
        self.core(core_id)
        channel = self._channels.get(core_id)
        if channel is None:
            raise TransportError("Helper is not running", core_id=core_id)
        return channel

    async def _launch(self, core_id: int) -> None:
        process = await self._spawn(self.core(core_id), pipes=True)
        self._channels[core_id] = _Channel(process=process)

    async def _close(self, core_id: int, channel: _Channel) -> None:
        stdin = channel.process.stdin
        if stdin is not None and not stdin.is_closing():
            # EOF on stdin asks the helper to exit on its own
            stdin.close()
        try:
            await asyncio.wait_for(channel.process.wait(), 1.0)
        except asyncio.TimeoutError:
            pass
        await self._terminate(channel.process, core_id)
