"""
Source media analysis with ffprobe.
"""
import json
from typing import Any, Dict, Optional

import structlog

from worker.utils.encoding import VideoAnalysis
from worker.utils.errors import ProcessError, ValidationError
from worker.utils.process import ProcessRunner

logger = structlog.get_logger()

DEFAULT_AUDIO_BITRATE = 128


def _parse_frame_rate(value: Optional[str]) -> float:
    if not value:
        return 0.0
    if "/" in value:
        num, _, den = value.partition("/")
        try:
            return float(num) / float(den) if float(den) else 0.0
        except ValueError:
            return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_probe_output(probe_data: Dict[str, Any]) -> VideoAnalysis:
    """Convert ``ffprobe -show_format -show_streams`` JSON to a VideoAnalysis."""
    fmt = probe_data.get("format", {})
    streams = probe_data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), {})
    audio = next((s for s in streams if s.get("codec_type") == "audio"), {})

    audio_bitrate = int(audio["bit_rate"]) / 1000 if audio.get("bit_rate") else DEFAULT_AUDIO_BITRATE

    return VideoAnalysis(
        duration=float(fmt.get("duration") or 0),
        bitrate=int(fmt.get("bit_rate") or 0) / 1000,
        audio_bitrate=audio_bitrate,
        audio_codec=audio.get("codec_name", "unknown"),
        video_codec=video.get("codec_name", "unknown"),
        file_size=int(fmt.get("size") or 0),
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        frame_rate=_parse_frame_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
    )


class MediaAnalyzer:
    """Extracts duration, bitrates, codecs and resolution from a media file."""

    def __init__(self, runner: ProcessRunner, ffprobe_path: str = "ffprobe", timeout_ms: int = 30000):
        self.runner = runner
        self.ffprobe_path = ffprobe_path
        self.timeout_ms = timeout_ms

    async def analyze(self, input_path: str) -> VideoAnalysis:
        args = ["-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", input_path]
        try:
            result = await self.runner.execute(self.ffprobe_path, args, timeout_ms=self.timeout_ms)
        except ProcessError as e:
            raise ValidationError(f"Unable to analyze media file {input_path}: {e.message}", field="input_path") from e

        try:
            probe_data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to parse ffprobe output: {e}", field="input_path") from e

        analysis = parse_probe_output(probe_data)
        logger.info(
            "Media analyzed",
            input_path=input_path,
            duration=analysis.duration,
            resolution=f"{analysis.width}x{analysis.height}",
            video_codec=analysis.video_codec,
        )
        return analysis
