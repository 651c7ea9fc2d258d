"""
Video processing orchestrator.

Runs one video through the full pipeline:

    validation -> workspace_setup -> key_generation -> transcoding
    -> packaging -> thumbnail -> cleanup

Every collaborator is injected; ``build_orchestrator`` wires the defaults.
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import aiofiles.os
import structlog
from pydantic import BaseModel, Field

from storage.workspace import Workspace, WorkspaceManager
from worker.config import Settings, get_settings
from worker.processors.streaming import PackagingRequest, PackagingResult, ShakaPackager
from worker.processors.thumbnail import ThumbnailGenerator
from worker.processors.video import FFmpegTranscoder, TranscodingRequest, TranscodingResult
from worker.security.keys import KeyManager
from worker.utils.cache import MemoryCache
from worker.utils.encoding import (
    SUPPORTED_CODECS,
    EncodingOptions,
    EncodingValidationService,
    VideoAnalysis,
)
from worker.utils.errors import OrchestrationError, PipelineError, ValidationError
from worker.utils.ffmpeg import HardwareEncoderProbe, list_video_encoders
from worker.utils.gpu import GPUDetector
from worker.utils.logger import video_context
from worker.utils.process import ProcessRunner
from worker.utils.progress import ProgressInfo

logger = structlog.get_logger()

PHASES = (
    "validation",
    "workspace_setup",
    "key_generation",
    "transcoding",
    "packaging",
    "thumbnail",
    "cleanup",
)


def _empty_phase_durations() -> Dict[str, float]:
    return {phase: 0.0 for phase in PHASES}


class OrchestrationRequest(BaseModel):
    video_id: str
    input_path: str
    encoding_options: EncodingOptions
    video_analysis: VideoAnalysis
    generate_thumbnail: bool = True
    cleanup_original: bool = False
    progress_callback: Optional[Callable[[ProgressInfo], Any]] = None


class ProcessingStatistics(BaseModel):
    video_id: str
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    phase_durations: Dict[str, float] = Field(default_factory=_empty_phase_durations)
    total_duration: float = 0.0
    used_gpu: bool = False
    codec_used: str = ""
    segment_count: int = 0
    compression_ratio: float = 0.0
    failed_phase: Optional[str] = None


class FileSizes(BaseModel):
    original: int = 0
    transcoded: int = 0
    packaged: int = 0


class OrchestrationResult(BaseModel):
    video_id: str
    manifest_path: str
    thumbnail_path: Optional[str] = None
    total_duration: float
    transcoding: TranscodingResult
    packaging: PackagingResult
    file_sizes: FileSizes
    statistics: ProcessingStatistics


class SystemRequirements(BaseModel):
    ffmpeg: Dict[str, Any]
    packager: Dict[str, Any]
    disk_space: Dict[str, Any]
    gpu: Dict[str, Any]


class _PhaseTimer:
    """Records the elapsed time of a phase, even when it raises."""

    def __init__(self, statistics: ProcessingStatistics, phase: str):
        self.statistics = statistics
        self.phase = phase
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.statistics.phase_durations[self.phase] = (time.perf_counter() - self._start) * 1000
        return False


class TranscodingOrchestrator:
    """Coordinates workspace, keys, transcoding, packaging and thumbnails for one video."""

    def __init__(
        self,
        settings: Settings,
        workspace_manager: WorkspaceManager,
        key_manager: KeyManager,
        transcoder: FFmpegTranscoder,
        packager: ShakaPackager,
        thumbnail_generator: ThumbnailGenerator,
        gpu_detector: GPUDetector,
        runner: ProcessRunner,
        validator: Optional[EncodingValidationService] = None,
        stats_cache: Optional[MemoryCache] = None,
    ):
        self.settings = settings
        self.workspace_manager = workspace_manager
        self.key_manager = key_manager
        self.transcoder = transcoder
        self.packager = packager
        self.thumbnail_generator = thumbnail_generator
        self.gpu_detector = gpu_detector
        self.runner = runner
        self.validator = validator or EncodingValidationService()
        self.stats_cache = stats_cache if stats_cache is not None else MemoryCache("processing-stats")
        self._stats_lock = asyncio.Lock()

    async def execute(self, request: OrchestrationRequest) -> OrchestrationResult:
        """Run every phase for one video. Failures raise OrchestrationError tagged with the phase."""
        with video_context(request.video_id):
            return await self._execute(request)

    async def _execute(self, request: OrchestrationRequest) -> OrchestrationResult:
        video_id = request.video_id
        statistics = ProcessingStatistics(video_id=video_id)
        started = time.perf_counter()
        phase = PHASES[0]

        logger.info("Starting video processing", video_id=video_id, input_path=request.input_path)

        try:
            phase = "validation"
            with _PhaseTimer(statistics, phase):
                original_size = await self._validate_request(request)

            phase = "workspace_setup"
            with _PhaseTimer(statistics, phase):
                workspace = await self.workspace_manager.create_workspace(video_id)

            phase = "key_generation"
            with _PhaseTimer(statistics, phase):
                key_result = await self.key_manager.generate_and_store_key(video_id)
                encryption = await self.key_manager.create_encryption_config(
                    video_id,
                    scheme=self.settings.ENCRYPTION_SCHEME,
                    drm_label=self.settings.DRM_LABEL,
                    key=key_result.key,
                )

            phase = "transcoding"
            with _PhaseTimer(statistics, phase):
                transcoding = await self.transcoder.transcode(TranscodingRequest(
                    video_id=video_id,
                    input_path=request.input_path,
                    output_path=str(workspace.intermediate_path),
                    encoding_options=request.encoding_options,
                    video_analysis=request.video_analysis,
                    pass_log_dir=str(workspace.temp_dir),
                    progress_callback=request.progress_callback,
                ))
            statistics.used_gpu = transcoding.used_gpu
            statistics.codec_used = transcoding.codec

            phase = "packaging"
            with _PhaseTimer(statistics, phase):
                packaging = await self.packager.package(PackagingRequest(
                    video_id=video_id,
                    input_path=transcoding.output_path,
                    output_dir=str(workspace.root_dir),
                    encryption=encryption,
                    segment_duration=self.settings.SEGMENT_DURATION,
                    static_live_mpd=self.settings.STATIC_LIVE_MPD,
                ))
            statistics.segment_count = packaging.segment_count

            thumbnail_path = None
            if request.generate_thumbnail:
                phase = "thumbnail"
                with _PhaseTimer(statistics, phase):
                    thumbnail_path = await self._generate_thumbnail(request, workspace)

            phase = "cleanup"
            with _PhaseTimer(statistics, phase):
                await self._cleanup(request, workspace)

        except Exception as e:
            statistics.failed_phase = phase
            statistics.total_duration = (time.perf_counter() - started) * 1000
            statistics.end_time = datetime.utcnow()
            logger.error(
                "Video processing failed",
                video_id=video_id,
                phase=phase,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._cleanup_after_failure(video_id)
            await self._store_statistics(statistics)
            raise OrchestrationError(phase, video_id, e) from e

        packaged_size = self.workspace_manager.get_directory_size(workspace.root_dir)
        statistics.compression_ratio = packaged_size / original_size if original_size else 0.0
        statistics.total_duration = (time.perf_counter() - started) * 1000
        statistics.end_time = datetime.utcnow()
        await self._store_statistics(statistics)

        logger.info(
            "Video processing completed",
            video_id=video_id,
            total_duration_ms=round(statistics.total_duration, 1),
            segment_count=statistics.segment_count,
            compression_ratio=round(statistics.compression_ratio, 3),
        )

        return OrchestrationResult(
            video_id=video_id,
            manifest_path=packaging.manifest_path,
            thumbnail_path=thumbnail_path,
            total_duration=statistics.total_duration,
            transcoding=transcoding,
            packaging=packaging,
            file_sizes=FileSizes(
                original=original_size,
                transcoded=transcoding.file_size,
                packaged=packaged_size,
            ),
            statistics=statistics,
        )

    async def _validate_request(self, request: OrchestrationRequest) -> int:
        """Check input, options and free space. Returns the input size in bytes."""
        if not await aiofiles.os.path.isfile(request.input_path):
            raise ValidationError(f"Input file not found: {request.input_path}", field="input_path")

        validation = self.validator.validate(request.encoding_options)
        if not validation["is_valid"]:
            raise ValidationError(
                f"Invalid encoding options: {'; '.join(validation['errors'])}",
                field="encoding_options",
            )
        for warning in validation["warnings"]:
            logger.warning("Encoding options warning", video_id=request.video_id, warning=warning)

        input_size = await aiofiles.os.path.getsize(request.input_path)
        required = input_size * self.settings.DISK_SPACE_MULTIPLIER
        if not self.workspace_manager.has_enough_space(required):
            available = self.workspace_manager.get_available_space()
            raise ValidationError(
                f"Insufficient disk space: need {required} bytes, {available} available",
                field="input_path",
            )
        return input_size

    async def _generate_thumbnail(self, request: OrchestrationRequest, workspace: Workspace) -> Optional[str]:
        try:
            return await self.thumbnail_generator.generate(request.input_path, str(workspace.thumbnail_path))
        except PipelineError as e:
            logger.warning("Thumbnail generation failed, continuing", video_id=request.video_id, error=str(e))
            return None

    async def _cleanup(self, request: OrchestrationRequest, workspace: Workspace) -> None:
        result = await self.workspace_manager.cleanup_temp_files(workspace)
        if result.errors:
            logger.warning("Temp file cleanup incomplete", video_id=request.video_id, errors=result.errors)

        await self.key_manager.cleanup_temp_files(request.video_id)

        if request.cleanup_original:
            await self.workspace_manager.remove_file(request.input_path)
            logger.info("Original input removed", video_id=request.video_id, input_path=request.input_path)

    async def _cleanup_after_failure(self, video_id: str) -> None:
        try:
            await self.workspace_manager.cleanup_workspace(video_id)
        except Exception as e:
            logger.warning("Workspace cleanup after failure failed", video_id=video_id, error=str(e))

    async def _store_statistics(self, statistics: ProcessingStatistics) -> None:
        async with self._stats_lock:
            await self.stats_cache.set(statistics.video_id, statistics)

    async def get_processing_statistics(self, video_id: str) -> Optional[ProcessingStatistics]:
        async with self._stats_lock:
            return await self.stats_cache.get(video_id)

    async def check_system_requirements(self) -> SystemRequirements:
        """Report tool, disk and GPU availability. Never raises."""
        ffmpeg: Dict[str, Any] = {"available": False, "version": None, "codecs": []}
        packager: Dict[str, Any] = {"available": False, "version": None}

        try:
            if await self.transcoder.is_available():
                ffmpeg["available"] = True
                ffmpeg["version"] = await self.transcoder.get_version()
                encoders = await list_video_encoders(self.runner, self.transcoder.ffmpeg_path)
                ffmpeg["codecs"] = [name for name in encoders if name in SUPPORTED_CODECS]
        except PipelineError as e:
            logger.warning("FFmpeg check failed", error=str(e))

        try:
            if await self.packager.is_available():
                packager["available"] = True
                packager["version"] = await self.packager.get_version()
        except PipelineError as e:
            logger.warning("Packager check failed", error=str(e))

        videos_dir = str(self.workspace_manager.videos_dir)
        try:
            disk_space = {"available": self.workspace_manager.get_available_space(), "path": videos_dir}
        except OSError as e:
            logger.warning("Disk space check failed", path=videos_dir, error=str(e))
            disk_space = {"available": 0, "path": videos_dir}

        gpu_info = await self.gpu_detector.detect()

        return SystemRequirements(
            ffmpeg=ffmpeg,
            packager=packager,
            disk_space=disk_space,
            gpu={"available": gpu_info["available"], "name": gpu_info["name"]},
        )


def build_orchestrator(settings: Optional[Settings] = None) -> TranscodingOrchestrator:
    """Wire the default component graph from settings."""
    settings = settings or get_settings()
    runner = ProcessRunner()

    probe = HardwareEncoderProbe(
        runner,
        MemoryCache("hardware-probe"),
        ffmpeg_path=settings.FFMPEG_PATH,
        timeout_ms=settings.PROBE_TIMEOUT * 1000,
    )
    transcoder = FFmpegTranscoder(
        runner,
        probe,
        ffmpeg_path=settings.FFMPEG_PATH,
        temp_dir=str(settings.TEMP_DIR),
        timeout_ms=settings.TRANSCODE_TIMEOUT * 1000,
    )
    packager = ShakaPackager(
        runner,
        packager_path=settings.SHAKA_PACKAGER_PATH,
        videos_dir=settings.VIDEOS_DIR,
        timeout_ms=settings.PACKAGER_TIMEOUT * 1000,
    )

    return TranscodingOrchestrator(
        settings=settings,
        workspace_manager=WorkspaceManager(settings.VIDEOS_DIR),
        key_manager=KeyManager.from_settings(settings),
        transcoder=transcoder,
        packager=packager,
        thumbnail_generator=ThumbnailGenerator(
            runner,
            ffmpeg_path=settings.FFMPEG_PATH,
            timeout_ms=settings.THUMBNAIL_TIMEOUT * 1000,
        ),
        gpu_detector=GPUDetector(runner, settings.NVIDIA_SMI_PATH),
        runner=runner,
        stats_cache=MemoryCache("processing-stats"),
    )
