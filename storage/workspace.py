"""
Per-video workspace management.

A workspace is the directory tree holding every artifact of one video:

    <videos_dir>/<video_id>/
        video/init.mp4, video/segment-0001.m4s, ...
        audio/init.mp4, audio/segment-0001.m4s, ...
        manifest.mpd
        thumbnail.jpg
        key.bin
        intermediate.mp4   (removed after packaging)
        temp/              (removed after packaging)
"""
import fnmatch
import os
import re
import shutil
from pathlib import Path
from typing import List, Optional, Union

import aiofiles
import aiofiles.os
import psutil
import structlog
from pydantic import BaseModel, Field

from worker.utils.errors import (
    InsufficientSpaceError,
    WorkspaceCreationError,
    WorkspaceNotFoundError,
)

logger = structlog.get_logger()

PASS_LOG_PATTERN = re.compile(r'^ffmpeg-pass.*\.log(\.mbtree)?$')
VIDEO_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')

PathLike = Union[str, Path]


class Workspace(BaseModel):
    video_id: str
    root_dir: Path
    video_seg_dir: Path
    audio_seg_dir: Path
    intermediate_path: Path
    manifest_path: Path
    thumbnail_path: Path
    key_path: Path
    temp_dir: Path


class CleanupResult(BaseModel):
    files_deleted: int = 0
    directories_deleted: int = 0
    size_freed: int = 0
    errors: List[str] = Field(default_factory=list)


class FileOperationResult(BaseModel):
    success: bool
    source: str
    destination: str
    error: Optional[str] = None


class WorkspaceManager:
    """Owns per-video directories, disk space checks and cleanup."""

    def __init__(self, videos_dir: PathLike):
        self.videos_dir = Path(videos_dir)

    def get_workspace_paths(self, video_id: str) -> Workspace:
        if not VIDEO_ID_PATTERN.match(video_id):
            raise WorkspaceCreationError(video_id, "invalid video id")

        root = self.videos_dir / video_id
        return Workspace(
            video_id=video_id,
            root_dir=root,
            video_seg_dir=root / "video",
            audio_seg_dir=root / "audio",
            intermediate_path=root / "intermediate.mp4",
            manifest_path=root / "manifest.mpd",
            thumbnail_path=root / "thumbnail.jpg",
            key_path=root / "key.bin",
            temp_dir=root / "temp",
        )

    async def create_workspace(self, video_id: str) -> Workspace:
        workspace = self.get_workspace_paths(video_id)
        try:
            for directory in (workspace.root_dir, workspace.video_seg_dir, workspace.audio_seg_dir, workspace.temp_dir):
                await aiofiles.os.makedirs(directory, exist_ok=True)
        except OSError as e:
            logger.error("Failed to create workspace", video_id=video_id, error=str(e))
            raise WorkspaceCreationError(video_id, str(e)) from e

        logger.info("Workspace created", video_id=video_id, root_dir=str(workspace.root_dir))
        return workspace

    async def get_workspace(self, video_id: str) -> Workspace:
        workspace = self.get_workspace_paths(video_id)
        if not await aiofiles.os.path.isdir(workspace.root_dir):
            raise WorkspaceNotFoundError(video_id)
        return workspace

    async def workspace_exists(self, video_id: str) -> bool:
        try:
            workspace = self.get_workspace_paths(video_id)
        except WorkspaceCreationError:
            return False
        return await aiofiles.os.path.isdir(workspace.root_dir)

    async def cleanup_temp_files(self, workspace: Workspace) -> CleanupResult:
        """Remove the intermediate file, temp directory and two-pass logs.

        Every item is attempted; failures are collected in ``errors``.
        """
        result = CleanupResult()

        self._remove_path(workspace.intermediate_path, result)

        for directory in (workspace.root_dir, workspace.temp_dir):
            if not directory.is_dir():
                continue
            try:
                names = os.listdir(directory)
            except OSError as e:
                result.errors.append(f"Failed to list {directory}: {e}")
                continue
            for name in names:
                if PASS_LOG_PATTERN.match(name):
                    self._remove_path(directory / name, result)

        if workspace.temp_dir.exists():
            try:
                for entry in list(workspace.temp_dir.iterdir()):
                    self._remove_path(entry, result)
                workspace.temp_dir.rmdir()
                result.directories_deleted += 1
            except OSError as e:
                result.errors.append(f"Failed to remove {workspace.temp_dir}: {e}")

        logger.info(
            "Workspace temp files cleaned",
            video_id=workspace.video_id,
            files_deleted=result.files_deleted,
            size_freed=result.size_freed,
            errors=len(result.errors),
        )
        return result

    async def cleanup_workspace(self, video_id: str) -> CleanupResult:
        """Recursively delete the whole workspace."""
        result = CleanupResult()
        workspace = self.get_workspace_paths(video_id)
        root = workspace.root_dir

        if not root.exists():
            return result

        size = self.get_directory_size(root)
        file_count = sum(len(files) for _, _, files in os.walk(root))

        errors: List[str] = []

        def on_error(func, path, exc):
            errors.append(f"Failed to remove {path}: {exc}")

        shutil.rmtree(root, onexc=on_error)

        result.errors.extend(errors)
        if not root.exists():
            result.directories_deleted = 1
            result.files_deleted = file_count
            result.size_freed = size
        else:
            result.size_freed = max(0, size - self.get_directory_size(root))

        logger.info("Workspace removed", video_id=video_id, size_freed=result.size_freed, errors=len(result.errors))
        return result

    def _remove_path(self, path: Path, result: CleanupResult) -> None:
        try:
            if path.is_dir() and not path.is_symlink():
                size = self.get_directory_size(path)
                shutil.rmtree(path)
                result.directories_deleted += 1
                result.size_freed += size
            elif path.exists() or path.is_symlink():
                size = path.lstat().st_size
                path.unlink()
                result.files_deleted += 1
                result.size_freed += size
        except FileNotFoundError:
            pass
        except OSError as e:
            result.errors.append(f"Failed to remove {path}: {e}")
            logger.warning("Cleanup item failed", path=str(path), error=str(e))

    # Disk space

    def get_available_space(self, path: Optional[PathLike] = None) -> int:
        """Free bytes on the filesystem holding ``path`` (defaults to the videos dir)."""
        target = Path(path) if path else self.videos_dir
        # Walk up until an existing directory is found
        while not target.exists() and target != target.parent:
            target = target.parent
        return psutil.disk_usage(str(target)).free

    def has_enough_space(self, required_bytes: int, path: Optional[PathLike] = None) -> bool:
        return self.get_available_space(path) > required_bytes

    def ensure_space(self, required_bytes: int, path: Optional[PathLike] = None) -> None:
        available = self.get_available_space(path)
        if available <= required_bytes:
            raise InsufficientSpaceError(required_bytes, available)

    # File operations

    async def file_exists(self, path: PathLike) -> bool:
        return await aiofiles.os.path.exists(path)

    async def get_file_size(self, path: PathLike) -> int:
        try:
            return await aiofiles.os.path.getsize(path)
        except OSError:
            return 0

    def get_directory_size(self, path: PathLike) -> int:
        total = 0
        for root, _, files in os.walk(path):
            for name in files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except OSError:
                    continue
        return total

    async def read_file(self, path: PathLike) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def write_file(self, path: PathLike, data: Union[str, bytes]) -> None:
        path = Path(path)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)

    async def list_files(self, directory: PathLike, pattern: Optional[str] = None) -> List[str]:
        """Sorted file names in ``directory``; a missing directory yields []."""
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return []
        files = [n for n in names if (Path(directory) / n).is_file()]
        if pattern:
            files = [n for n in files if fnmatch.fnmatch(n, pattern)]
        return sorted(files)

    async def remove_file(self, path: PathLike) -> bool:
        """Delete a file. Returns False when it was already absent."""
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False

    async def move_file(self, source: PathLike, destination: PathLike) -> FileOperationResult:
        try:
            await aiofiles.os.makedirs(Path(destination).parent, exist_ok=True)
            shutil.move(str(source), str(destination))
            return FileOperationResult(success=True, source=str(source), destination=str(destination))
        except OSError as e:
            logger.warning("Move failed", source=str(source), destination=str(destination), error=str(e))
            return FileOperationResult(success=False, source=str(source), destination=str(destination), error=str(e))

    async def copy_file(self, source: PathLike, destination: PathLike) -> FileOperationResult:
        try:
            await aiofiles.os.makedirs(Path(destination).parent, exist_ok=True)
            async with aiofiles.open(source, "rb") as src_file:
                async with aiofiles.open(destination, "wb") as dst_file:
                    while chunk := await src_file.read(1024 * 1024):
                        await dst_file.write(chunk)
            return FileOperationResult(success=True, source=str(source), destination=str(destination))
        except OSError as e:
            logger.warning("Copy failed", source=str(source), destination=str(destination), error=str(e))
            return FileOperationResult(success=False, source=str(source), destination=str(destination), error=str(e))
