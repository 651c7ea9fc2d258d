"""
Flat-file JSON persistence with one writer per file.

Each path gets its own asyncio.Lock from a registry; writes go to a temp
file in the same directory and are renamed over the target, so readers
never observe a half-written document.
"""
import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Union

import aiofiles
import aiofiles.os
import structlog

logger = structlog.get_logger()

PathLike = Union[str, Path]


class PathLockRegistry:
    """Hands out one lock per resolved file path."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, path: PathLike) -> asyncio.Lock:
        key = str(Path(path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def count(self) -> int:
        return len(self._locks)

    def clear(self) -> None:
        self._locks.clear()


class JsonFileStore:
    """Serialized, atomic JSON reads and writes."""

    def __init__(self, locks: PathLockRegistry = None, indent: int = 2):
        self.locks = locks or PathLockRegistry()
        self.indent = indent

    async def write_json(self, path: PathLike, data: Any) -> None:
        async with self.locks.get(path):
            await self._write_atomic(Path(path), data)

    async def read_json(self, path: PathLike, default: Any = None) -> Any:
        async with self.locks.get(path):
            return await self._read(Path(path), default)

    async def update_json(self, path: PathLike, updater: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write under the file's lock. Returns the stored value."""
        async with self.locks.get(path):
            current = await self._read(Path(path), default)
            updated = updater(current)
            await self._write_atomic(Path(path), updated)
            return updated

    async def ensure_file(self, path: PathLike, default: Any) -> None:
        """Create the file with ``default`` content when it does not exist."""
        async with self.locks.get(path):
            if not await aiofiles.os.path.exists(path):
                await self._write_atomic(Path(path), default)

    def lock_count(self) -> int:
        return self.locks.count()

    def clear(self) -> None:
        self.locks.clear()

    async def _read(self, path: Path, default: Any) -> Any:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return default

        if not content.strip():
            return default
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error("Corrupted JSON file", path=str(path), error=str(e))
            raise

    async def _write_atomic(self, path: Path, data: Any) -> None:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        payload = json.dumps(data, indent=self.indent, default=str)
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
            os.replace(temp_path, path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise
