"""
Length-prefixed framing for stream transports.

Frame format:
+----------------+----------------+
| Length         | Payload        |
| 4 bytes (BE)   | Length bytes   |
+----------------+----------------+
"""

import asyncio
import struct
from typing import Optional

from ...core.exceptions import MessageFormatError, TransportError

HEADER_FORMAT = '>I'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 16 * 1024 * 1024


def encode_frame(payload: bytes, max_size: int = MAX_FRAME_SIZE) -> bytes:
    """
    Prefix a payload with its length.

    Raises:
        MessageFormatError: If the payload exceeds ``max_size``
    """
    if len(payload) > max_size:
        raise MessageFormatError(
            f"Frame of {len(payload)} bytes exceeds the {max_size} byte limit")
    return struct.pack(HEADER_FORMAT, len(payload)) + payload


def decode_header(header: bytes, max_size: int = MAX_FRAME_SIZE) -> int:
    """Return the payload length announced by a frame header."""
    if len(header) != HEADER_SIZE:
        raise MessageFormatError(f"Frame header must be {HEADER_SIZE} bytes")
    (length,) = struct.unpack(HEADER_FORMAT, header)
    if length > max_size:
        raise MessageFormatError(
            f"Announced frame of {length} bytes exceeds the {max_size} byte limit")
    return length


async def read_frame(reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE,
                     core_id: Optional[int] = None) -> bytes:
    """
    Read one frame from a stream.

    Raises:
        TransportError: If the stream ended, mid-frame or between frames
        MessageFormatError: If the announced length is over the limit
    """
    try:
        header = await reader.readexactly(HEADER_SIZE)
        length = decode_header(header, max_size)
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        if e.partial:
            raise TransportError("Stream closed mid-frame", retryable=True, core_id=core_id)
        raise TransportError("Stream closed", retryable=True, core_id=core_id)


async def write_frame(writer: asyncio.StreamWriter, payload: bytes,
                      max_size: int = MAX_FRAME_SIZE, core_id: Optional[int] = None) -> None:
    """Write one frame and wait for the stream to drain."""
    data = encode_frame(payload, max_size)
    try:
        writer.write(data)
        await writer.drain()
    except (ConnectionError, RuntimeError) as e:
        raise TransportError(f"Write failed: {e}", retryable=True, core_id=core_id)
