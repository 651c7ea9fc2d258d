"""
DASH packaging with Shaka Packager: segmentation, CENC/CBCS encryption
and manifest generation, followed by output verification.
"""
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import structlog
from pydantic import BaseModel

from worker.security.keys import KEY_FILE_NAME, KEY_LENGTH, EncryptionConfig
from worker.utils.error_classification import classify_packaging_error
from worker.utils.errors import (
    EncryptionSetupError,
    PackageValidationError,
    PackagingSystemUnavailableError,
    ProcessError,
)
from worker.utils.process import ProcessRunner
from worker.utils.progress import GenericProgressParser

logger = structlog.get_logger()

MANIFEST_NAME = "manifest.mpd"
INIT_SEGMENT_NAME = "init.mp4"
SEGMENT_TEMPLATE = "segment-$Number%04d$.m4s"
SUPPORTED_SCHEMES = ("cenc", "cbcs", "none")


class PackagingRequest(BaseModel):
    video_id: str
    input_path: str
    output_dir: str
    encryption: EncryptionConfig
    segment_duration: int = 10
    static_live_mpd: bool = True


class PackagingResult(BaseModel):
    manifest_path: str
    video_segments: List[str]
    audio_segments: List[str]
    video_init_segment: str
    audio_init_segment: str
    segment_count: int
    duration_ms: float


def scheme_for_security_level(level: str) -> str:
    return "cbcs" if level == "enhanced" else "cenc"


class ShakaPackager:
    """Packages a transcoded MP4 into encrypted DASH segments."""

    def __init__(
        self,
        runner: ProcessRunner,
        packager_path: str = "packager",
        videos_dir: Optional[Path] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.runner = runner
        self.packager_path = packager_path
        self.videos_dir = Path(videos_dir) if videos_dir else None
        self.timeout_ms = timeout_ms

    async def is_available(self) -> bool:
        try:
            await self.runner.execute(self.packager_path, ["--version"], timeout_ms=10000)
            return True
        except ProcessError:
            return False

    async def get_version(self) -> str:
        result = await self.runner.execute(self.packager_path, ["--version"], timeout_ms=10000)
        output = (result.stdout or result.stderr or "").strip()
        return output.splitlines()[0] if output else "Unknown"

    def build_stream_descriptor(self, input_path: str, output_dir: str, stream: str, drm_label: Optional[str]) -> str:
        stream_dir = Path(output_dir) / stream
        parts = [
            f"in={input_path}",
            f"stream={stream}",
            f"init_segment={stream_dir / INIT_SEGMENT_NAME}",
            f"segment_template={stream_dir / SEGMENT_TEMPLATE}",
        ]
        if drm_label:
            parts.append(f"drm_label={drm_label}")
        return ",".join(parts)

    def build_args(self, request: PackagingRequest) -> List[str]:
        encryption = request.encryption
        encrypted = encryption.scheme != "none"
        drm_label = encryption.drm_label if encrypted else None

        args = [
            self.build_stream_descriptor(request.input_path, request.output_dir, "video", drm_label),
            self.build_stream_descriptor(request.input_path, request.output_dir, "audio", drm_label),
        ]

        if encrypted:
            args.extend([
                "--enable_raw_key_encryption",
                "--protection_scheme", encryption.scheme,
                "--keys", f"label={encryption.drm_label}:key_id={encryption.key_id}:key={encryption.key}",
            ])

        if request.static_live_mpd:
            args.append("--generate_static_live_mpd")

        args.extend([
            "--mpd_output", str(Path(request.output_dir) / MANIFEST_NAME),
            "--segment_duration", str(request.segment_duration),
        ])
        return args

    def _check_encryption(self, encryption: EncryptionConfig) -> None:
        if encryption.scheme not in SUPPORTED_SCHEMES:
            raise EncryptionSetupError(f"Unsupported protection scheme: {encryption.scheme}")
        if encryption.scheme == "none":
            return
        for name, value in (("key", encryption.key), ("key_id", encryption.key_id)):
            try:
                raw = bytes.fromhex(value)
            except ValueError as e:
                raise EncryptionSetupError(f"Encryption {name} is not valid hex") from e
            if len(raw) != KEY_LENGTH:
                raise EncryptionSetupError(f"Encryption {name} must be {KEY_LENGTH} bytes, got {len(raw)}")

    async def package(self, request: PackagingRequest) -> PackagingResult:
        self._check_encryption(request.encryption)

        if not await self.is_available():
            raise PackagingSystemUnavailableError()

        for stream in ("video", "audio"):
            os.makedirs(Path(request.output_dir) / stream, exist_ok=True)

        args = self.build_args(request)
        logger.info(
            "Starting packaging",
            video_id=request.video_id,
            scheme=request.encryption.scheme,
            segment_duration=request.segment_duration,
        )
        start = time.perf_counter()

        try:
            await self.runner.execute_with_streaming(
                self.packager_path,
                args,
                on_progress=lambda progress: logger.debug(
                    "Packaging progress", video_id=request.video_id, percentage=progress.percentage
                ),
                progress_parser=GenericProgressParser(),
                timeout_ms=self.timeout_ms,
                label=f"package-{request.video_id}",
            )
        except ProcessError as e:
            raise classify_packaging_error(e) from e

        result = await self.verify_output(request)
        result.duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "Packaging completed",
            video_id=request.video_id,
            segment_count=result.segment_count,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def verify_output(self, request: PackagingRequest) -> PackagingResult:
        """Check every expected artifact; raise once with all failures."""
        output_dir = Path(request.output_dir)
        manifest_path = output_dir / MANIFEST_NAME
        issues: List[str] = []

        manifest = await self._read_text(manifest_path)
        if manifest is None:
            issues.append(f"Manifest not found: {manifest_path}")
        elif "<MPD" not in manifest or "</MPD>" not in manifest:
            issues.append("Manifest is missing the MPD root element")

        if request.encryption.scheme != "none":
            key_path = output_dir / KEY_FILE_NAME
            if not key_path.is_file():
                issues.append(f"Encryption key file not found: {key_path}")
            elif key_path.stat().st_size != KEY_LENGTH:
                issues.append(f"Encryption key file must be {KEY_LENGTH} bytes")

        segments: Dict[str, List[str]] = {}
        for stream in ("video", "audio"):
            stream_dir = output_dir / stream
            if not (stream_dir / INIT_SEGMENT_NAME).is_file():
                issues.append(f"Missing {stream} init segment")
            segments[stream] = await self.list_segments(stream_dir)
            if not segments[stream]:
                issues.append(f"No {stream} media segments produced")

        if issues:
            logger.error("Package validation failed", video_id=request.video_id, issues=issues)
            raise PackageValidationError(issues)

        return PackagingResult(
            manifest_path=str(manifest_path),
            video_segments=segments["video"],
            audio_segments=segments["audio"],
            video_init_segment=str(output_dir / "video" / INIT_SEGMENT_NAME),
            audio_init_segment=str(output_dir / "audio" / INIT_SEGMENT_NAME),
            segment_count=len(segments["video"]) + len(segments["audio"]),
            duration_ms=0.0,
        )

    async def list_segments(self, directory: Path) -> List[str]:
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return []
        return sorted(str(Path(directory) / n) for n in names if n.endswith(".m4s"))

    async def validate_packaged_video(self, video_id: str, packaged_dir: Optional[Path] = None) -> Dict[str, Any]:
        """Independent manifest, key and segment checks reported as a dict."""
        if packaged_dir is None:
            if self.videos_dir is None:
                logger.warning("No directory to validate", video_id=video_id)
                return {
                    "is_valid": False,
                    "manifest_valid": False,
                    "encryption_valid": False,
                    "segments_complete": False,
                    "issues": ["No video directory configured"],
                }
            packaged_dir = self.videos_dir / video_id
        packaged_dir = Path(packaged_dir)

        issues: List[str] = []
        manifest_valid = False
        encryption_valid = False
        segments_complete = False

        manifest = await self._read_text(packaged_dir / MANIFEST_NAME)
        if manifest is None:
            issues.append("Manifest file not found or inaccessible")
        else:
            manifest_valid = "<MPD" in manifest and "</MPD>" in manifest
            if not manifest_valid:
                issues.append("Manifest file is invalid or corrupted")

        key_path = packaged_dir / KEY_FILE_NAME
        try:
            encryption_valid = key_path.stat().st_size == KEY_LENGTH
            if not encryption_valid:
                issues.append("Encryption key file is invalid size")
        except OSError:
            issues.append("Encryption key file not found")

        video_segments = await self.list_segments(packaged_dir / "video")
        audio_segments = await self.list_segments(packaged_dir / "audio")
        segments_complete = bool(video_segments) and bool(audio_segments)
        if not segments_complete:
            issues.append("Video or audio segments are missing")

        return {
            "is_valid": manifest_valid and encryption_valid and segments_complete,
            "manifest_valid": manifest_valid,
            "encryption_valid": encryption_valid,
            "segments_complete": segments_complete,
            "issues": issues,
        }

    @staticmethod
    async def _read_text(path: Path) -> Optional[str]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                return await f.read()
        except OSError:
            return None
