"""
Repeating-key XOR transform used to obfuscate small assets such as thumbnails.

Applying the transform twice with the same key restores the input, and
chunks can be processed independently as long as the running offset is
carried over.
"""
from pathlib import Path
from typing import Union

import aiofiles
import structlog

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 64 * 1024

KeyLike = Union[str, bytes]


def _key_bytes(key: KeyLike) -> bytes:
    key_bytes = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if not key_bytes:
        raise ValueError("XOR key must not be empty")
    return key_bytes


def xor_transform(data: bytes, key: KeyLike, offset: int = 0) -> bytes:
    """XOR ``data`` with ``key`` cycled from position ``offset``."""
    key_bytes = _key_bytes(key)
    key_len = len(key_bytes)
    return bytes(b ^ key_bytes[(offset + i) % key_len] for i, b in enumerate(data))


class XorTransformStream:
    """Stateful chunk transformer that tracks the key offset between chunks."""

    def __init__(self, key: KeyLike):
        self.key = _key_bytes(key)
        self.offset = 0

    def transform(self, chunk: bytes) -> bytes:
        result = xor_transform(chunk, self.key, self.offset)
        self.offset += len(chunk)
        return result

    def reset(self) -> None:
        self.offset = 0


async def xor_file(
    source: Union[str, Path],
    destination: Union[str, Path],
    key: KeyLike,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Transform a file chunk by chunk. Returns the number of bytes written."""
    stream = XorTransformStream(key)
    written = 0
    async with aiofiles.open(source, "rb") as src, aiofiles.open(destination, "wb") as dst:
        while True:
            chunk = await src.read(chunk_size)
            if not chunk:
                break
            await dst.write(stream.transform(chunk))
            written += len(chunk)

    logger.debug("XOR transform applied", source=str(source), destination=str(destination), size=written)
    return written
