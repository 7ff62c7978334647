import asyncio
import json
import struct
from typing import Any, Dict

"""
framing.py — length-prefixed JSON framing for the relay's asyncio streams.

Protocol (simple on purpose):
- Each frame = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- Hard cap at 4 MiB so a buggy peer can't make us allocate silly amounts of memory.
- Every frame is a JSON object with a "type" field (LOGIN, SEND, MESSAGE, ...).
"""

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one framed JSON object.

    Raises:
        asyncio.IncompleteReadError: the other side hung up mid-frame.
        ValueError: the frame is too big, not JSON, or not an object.
    """
    len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Sanity check before allocating/reading the body.
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    payload = await reader.readexactly(length)
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo.
        raise ValueError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError("Frame must be a JSON object")
    return obj


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize a dict to compact JSON and write it as one frame."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")

    writer.write(LENGTH_STRUCT.pack(len(payload)))
    writer.write(payload)
    await writer.drain()  # Let the transport flush; matters under backpressure.
