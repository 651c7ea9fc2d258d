"""
Thumbnail extraction: pick a frame at the first scene change, falling back
to a fixed timestamp when scene detection yields nothing.
"""
from pathlib import Path
from typing import List

import aiofiles.os
import structlog

from worker.utils.errors import ProcessError, ThumbnailGenerationError
from worker.utils.process import ProcessRunner

logger = structlog.get_logger()

THUMBNAIL_WIDTH = 640
THUMBNAIL_HEIGHT = 360
SCENE_THRESHOLD = 0.3
FALLBACK_TIMESTAMP = 3


def _scale_filter() -> str:
    w, h = THUMBNAIL_WIDTH, THUMBNAIL_HEIGHT
    return f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2"


class ThumbnailGenerator:

    def __init__(self, runner: ProcessRunner, ffmpeg_path: str = "ffmpeg", timeout_ms: int = 60000):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path
        self.timeout_ms = timeout_ms

    def build_scene_args(self, input_path: str, output_path: str) -> List[str]:
        return [
            "-i", input_path,
            "-vf", f"select='gt(scene,{SCENE_THRESHOLD})',{_scale_filter()}",
            "-frames:v", "1",
            "-vsync", "vfr",
            "-q:v", "2",
            "-y",
            output_path,
        ]

    def build_fallback_args(self, input_path: str, output_path: str) -> List[str]:
        return [
            "-ss", str(FALLBACK_TIMESTAMP),
            "-i", input_path,
            "-vframes", "1",
            "-vf", _scale_filter(),
            "-q:v", "2",
            "-y",
            output_path,
        ]

    async def generate(self, input_path: str, output_path: str) -> str:
        # A thumbnail left by an earlier run must not pass the output check
        try:
            await aiofiles.os.remove(output_path)
        except FileNotFoundError:
            pass

        try:
            await self._run(self.build_scene_args(input_path, output_path))
            if await self._has_output(output_path):
                logger.info("Thumbnail generated from scene change", output_path=output_path)
                return output_path
        except ProcessError as e:
            logger.warning("Scene-based thumbnail failed, using fallback", error=str(e))

        try:
            await self._run(self.build_fallback_args(input_path, output_path))
        except ProcessError as e:
            raise ThumbnailGenerationError(f"Thumbnail generation failed: {e.message}") from e

        if not await self._has_output(output_path):
            raise ThumbnailGenerationError(f"Thumbnail was not created: {output_path}")

        logger.info("Thumbnail generated at fixed timestamp", output_path=output_path)
        return output_path

    async def _run(self, args: List[str]) -> None:
        await self.runner.execute(self.ffmpeg_path, args, timeout_ms=self.timeout_ms, capture_stdout=False)

    @staticmethod
    async def _has_output(path: str) -> bool:
        try:
            return await aiofiles.os.path.getsize(Path(path)) > 0
        except OSError:
            return False
