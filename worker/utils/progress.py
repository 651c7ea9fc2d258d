"""Progress parsing and tracking utilities"""
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()

PERCENT_PATTERN = re.compile(r'(\d+(?:\.\d+)?)\s*%')


class ProgressInfo(BaseModel):
    """Progress snapshot extracted from one line of tool output."""
    percentage: Optional[float] = None
    frame: Optional[int] = None
    fps: Optional[float] = None
    time: Optional[float] = None
    bitrate: Optional[float] = None
    speed: Optional[float] = None
    eta: Optional[str] = None
    raw: str = ""


ProgressCallback = Callable[[ProgressInfo], Union[None, Awaitable[None]]]


def parse_percentage(line: str) -> Optional[float]:
    """Extract a generic ``NN%`` / ``NN.N %`` value."""
    match = PERCENT_PATTERN.search(line)
    if not match:
        return None
    return min(100.0, max(0.0, float(match.group(1))))


def format_eta(seconds: float) -> str:
    """Format remaining seconds as MM:SS, or HH:MM:SS from one hour up."""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class FFmpegProgressParser:
    """Parse FFmpeg progress output."""

    def __init__(self, total_duration: Optional[float] = None):
        self.total_duration = total_duration
        self.frame_pattern = re.compile(r'frame=\s*(\d+)')
        self.fps_pattern = re.compile(r'fps=\s*([\d.]+)')
        self.time_pattern = re.compile(r'time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})')
        self.bitrate_pattern = re.compile(r'bitrate=\s*([\d.]+)kbits/s')
        self.speed_pattern = re.compile(r'speed=\s*([\d.]+)x')

    def parse(self, line: str) -> Optional[ProgressInfo]:
        """Parse progress information from FFmpeg output line."""
        if not line.strip():
            return None

        progress: Dict[str, Any] = {}

        frame_match = self.frame_pattern.search(line)
        if frame_match:
            progress['frame'] = int(frame_match.group(1))

        fps_match = self.fps_pattern.search(line)
        if fps_match:
            progress['fps'] = float(fps_match.group(1))

        time_match = self.time_pattern.search(line)
        if time_match:
            hours = int(time_match.group(1))
            minutes = int(time_match.group(2))
            seconds = int(time_match.group(3))
            centiseconds = int(time_match.group(4))
            progress['time'] = hours * 3600 + minutes * 60 + seconds + centiseconds / 100

        bitrate_match = self.bitrate_pattern.search(line)
        if bitrate_match:
            progress['bitrate'] = float(bitrate_match.group(1))

        speed_match = self.speed_pattern.search(line)
        if speed_match:
            progress['speed'] = float(speed_match.group(1))

        if not progress:
            return None

        current = progress.get('time')
        if current is not None and self.total_duration and self.total_duration > 0:
            progress['percentage'] = min(100.0, max(0.0, current / self.total_duration * 100))
            speed = progress.get('speed')
            if speed and speed > 0:
                progress['eta'] = format_eta((self.total_duration - current) / speed)

        return ProgressInfo(raw=line.strip(), **progress)


class GenericProgressParser:
    """Fallback parser for tools that print plain percentages."""

    def parse(self, line: str) -> Optional[ProgressInfo]:
        percentage = parse_percentage(line)
        if percentage is None:
            return None
        return ProgressInfo(percentage=percentage, raw=line.strip())


class ProgressTracker:
    """Tracks processing progress for one video with throttled log updates."""

    def __init__(self, video_id: str, stage: str = "transcoding", update_interval: float = 2.0):
        self.video_id = video_id
        self.stage = stage
        self.update_interval = update_interval
        self.last_update = 0.0
        self.last_percentage = 0.0
        self.last_progress: Optional[ProgressInfo] = None

    def should_emit(self, percentage: float) -> bool:
        now = time.monotonic()
        return (
            percentage >= 100.0 or
            abs(percentage - self.last_percentage) >= 5.0 or
            now - self.last_update >= self.update_interval
        )

    async def ffmpeg_callback(self, progress: ProgressInfo):
        """Handle FFmpeg progress callback."""
        self.last_progress = progress
        percentage = progress.percentage or 0.0
        if not self.should_emit(percentage):
            return

        message_parts = []
        if progress.frame is not None:
            message_parts.append(f"Frame {progress.frame}")
        if progress.fps is not None:
            message_parts.append(f"FPS {progress.fps:.1f}")
        if progress.speed is not None:
            message_parts.append(f"Speed {progress.speed:.1f}x")
        if progress.eta:
            message_parts.append(f"ETA {progress.eta}")

        logger.info(
            "Progress updated",
            video_id=self.video_id,
            stage=self.stage,
            percentage=round(percentage, 1),
            message=" | ".join(message_parts) if message_parts else "Processing video",
        )
        self.last_update = time.monotonic()
        self.last_percentage = percentage
