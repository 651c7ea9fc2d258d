"""
Transcoding adapter: turns encoding options into FFmpeg runs.
"""
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

import aiofiles.os
import structlog
from pydantic import BaseModel

from worker.utils.encoding import (
    EncodingOptions,
    LegacyEncodingOptions,
    VideoAnalysis,
    is_hardware_codec,
    needs_two_pass,
    resolve_encoding_options,
)
from worker.utils.error_classification import classify_transcoding_error
from worker.utils.errors import (
    ProcessError,
    TranscodingFailedError,
    TranscodingSystemUnavailableError,
)
from worker.utils.ffmpeg import FFmpegCommandBuilder, FFmpegCommandOptions, HardwareEncoderProbe, get_ffmpeg_version
from worker.utils.process import ProcessRunner
from worker.utils.progress import FFmpegProgressParser, ProgressInfo, ProgressTracker

logger = structlog.get_logger()


class TranscodingRequest(BaseModel):
    video_id: str
    input_path: str
    output_path: str
    encoding_options: EncodingOptions
    video_analysis: VideoAnalysis
    pass_log_dir: Optional[str] = None
    progress_callback: Optional[Callable[[ProgressInfo], Any]] = None


class TranscodingResult(BaseModel):
    output_path: str
    duration_ms: float
    used_gpu: bool
    codec: str
    file_size: int
    two_pass: bool = False


class FFmpegTranscoder:
    """Runs single or two-pass FFmpeg encodes with hardware encoder checks."""

    def __init__(
        self,
        runner: ProcessRunner,
        probe: HardwareEncoderProbe,
        ffmpeg_path: str = "ffmpeg",
        temp_dir: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.runner = runner
        self.probe = probe
        self.ffmpeg_path = ffmpeg_path
        self.temp_dir = temp_dir
        self.timeout_ms = timeout_ms
        self.command_builder = FFmpegCommandBuilder()

    async def is_available(self) -> bool:
        return await self.runner.is_command_available(self.ffmpeg_path)

    async def get_version(self) -> str:
        return await get_ffmpeg_version(self.runner, self.ffmpeg_path)

    async def transcode(self, request: TranscodingRequest) -> TranscodingResult:
        if not await self.is_available():
            raise TranscodingSystemUnavailableError()

        options = resolve_encoding_options(request.encoding_options)
        use_ladder = isinstance(request.encoding_options, LegacyEncodingOptions)
        hardware = is_hardware_codec(options.codec)

        if hardware:
            probe = await self.probe.probe(options.codec)
            if not probe.available:
                raise TranscodingFailedError(
                    f"Hardware encoder {options.codec} was requested but is not usable: {probe.reason}"
                )

        command_options = self.command_builder.build_command_options(
            request.input_path,
            request.output_path,
            options,
            request.video_analysis,
            use_ladder=use_ladder,
        )
        two_pass = needs_two_pass(options)

        logger.info(
            "Starting transcoding",
            video_id=request.video_id,
            codec=options.codec,
            two_pass=two_pass,
            hardware=hardware,
        )
        start = time.perf_counter()

        try:
            if two_pass:
                await self._transcode_two_pass(request, command_options)
            else:
                await self._run_ffmpeg(
                    self.command_builder.build_args(command_options),
                    request,
                    stage="transcoding",
                )
        except ProcessError as e:
            raise classify_transcoding_error(e) from e

        if not await aiofiles.os.path.exists(request.output_path):
            raise TranscodingFailedError(f"FFmpeg finished but produced no output: {request.output_path}")

        duration_ms = (time.perf_counter() - start) * 1000
        file_size = await aiofiles.os.path.getsize(request.output_path)

        logger.info(
            "Transcoding completed",
            video_id=request.video_id,
            duration_ms=round(duration_ms, 1),
            file_size=file_size,
        )
        return TranscodingResult(
            output_path=request.output_path,
            duration_ms=duration_ms,
            used_gpu=hardware,
            codec=options.codec,
            file_size=file_size,
            two_pass=two_pass,
        )

    def pass_log_prefix(self, request: TranscodingRequest) -> str:
        base = request.pass_log_dir or self.temp_dir or tempfile.gettempdir()
        return str(Path(base) / f"ffmpeg-pass-{request.video_id}")

    async def _transcode_two_pass(self, request: TranscodingRequest, command_options: FFmpegCommandOptions) -> None:
        prefix = self.pass_log_prefix(request)
        try:
            logger.info("Pass 1: analyzing video", video_id=request.video_id)
            await self._run_ffmpeg(
                self.command_builder.build_pass_args(command_options, 1, prefix),
                request,
                stage="pass-1",
            )

            logger.info("Pass 2: encoding with analysis data", video_id=request.video_id)
            await self._run_ffmpeg(
                self.command_builder.build_pass_args(command_options, 2, prefix),
                request,
                stage="pass-2",
            )
        finally:
            await self.cleanup_pass_logs(prefix)

    async def cleanup_pass_logs(self, prefix: str) -> List[str]:
        removed = []
        for suffix in ("-0.log", "-0.log.mbtree"):
            path = f"{prefix}{suffix}"
            try:
                await aiofiles.os.remove(path)
                removed.append(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to remove pass log", path=path, error=str(e))
        return removed

    async def _run_ffmpeg(self, args: List[str], request: TranscodingRequest, stage: str) -> None:
        tracker = ProgressTracker(request.video_id, stage=stage)

        async def on_progress(progress: ProgressInfo):
            await tracker.ffmpeg_callback(progress)
            if request.progress_callback:
                result = request.progress_callback(progress)
                if hasattr(result, "__await__"):
                    await result

        await self.runner.execute_with_streaming(
            self.ffmpeg_path,
            args,
            on_progress=on_progress,
            progress_parser=FFmpegProgressParser(request.video_analysis.duration),
            timeout_ms=self.timeout_ms,
            capture_stdout=False,
            label=f"transcode-{request.video_id}",
        )
