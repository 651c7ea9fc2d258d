"""
FFmpeg command building and hardware encoder probing.
"""
import os
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel

from worker.utils.cache import MemoryCache
from worker.utils.encoding import AudioSettings, EnhancedEncodingOptions, VideoAnalysis, is_hardware_codec
from worker.utils.errors import ProcessExecutionError, ProcessTimeoutError
from worker.utils.process import ProcessRunner

logger = structlog.get_logger()

# (minimum pixel count exclusive, kbps)
RESOLUTION_BITRATE_LADDER = [
    (3840 * 2160, 15000),
    (1920 * 1080, 8000),
    (1280 * 720, 5000),
    (854 * 480, 2500),
]
DEFAULT_VIDEO_BITRATE = 2000
HARDWARE_BITRATE_FACTOR = 1.2

PROBE_RESOLUTION = "256x256"


class FFmpegCommandOptions(BaseModel):
    input: str
    output: str
    video_codec: str
    quality_param: Optional[str] = None
    quality_value: Optional[int] = None
    preset: Optional[str] = None
    video_bitrate: Optional[str] = None
    max_video_bitrate: Optional[str] = None
    buffer_size: Optional[str] = None
    audio_codec: str = 'aac'
    audio_bitrate: Optional[str] = '128k'
    audio_channels: Optional[int] = 2
    audio_sample_rate: Optional[int] = 44100
    additional_flags: List[str] = []
    pass_number: Optional[int] = None
    pass_log_prefix: Optional[str] = None
    hw_accel: bool = False


class HardwareProbeResult(BaseModel):
    available: bool
    reason: Optional[str] = None


def calculate_ladder_bitrates(analysis: VideoAnalysis, hardware: bool = False) -> Dict[str, str]:
    """Pick target/max/buffer bitrates from the source resolution."""
    pixels = analysis.width * analysis.height

    target = DEFAULT_VIDEO_BITRATE
    for threshold, bitrate in RESOLUTION_BITRATE_LADDER:
        if pixels > threshold:
            target = bitrate
            break

    # Hardware encoders need more bits for the same visual quality
    if hardware:
        target = int(target * HARDWARE_BITRATE_FACTOR)

    return {
        'video_bitrate': f"{target}k",
        'max_video_bitrate': f"{int(target * 1.5)}k",
        'buffer_size': f"{target * 2}k",
    }


class FFmpegCommandBuilder:
    """Build FFmpeg argument lists from resolved encoding options."""

    def build_command_options(
        self,
        input_path: str,
        output_path: str,
        options: EnhancedEncodingOptions,
        analysis: Optional[VideoAnalysis] = None,
        use_ladder: bool = False,
    ) -> FFmpegCommandOptions:
        hardware = is_hardware_codec(options.codec)
        audio = options.audio_settings or AudioSettings()

        bitrates: Dict[str, Optional[str]] = {'video_bitrate': None, 'max_video_bitrate': None, 'buffer_size': None}
        if options.target_video_bitrate:
            target = options.target_video_bitrate
            bitrates = {
                'video_bitrate': f"{target}k",
                'max_video_bitrate': f"{round(target * 1.5)}k",
                'buffer_size': f"{target * 2}k",
            }
        elif use_ladder and analysis is not None:
            bitrates = calculate_ladder_bitrates(analysis, hardware)

        return FFmpegCommandOptions(
            input=input_path,
            output=output_path,
            video_codec=options.codec,
            quality_param=options.quality_param,
            quality_value=options.quality_value,
            preset=options.preset,
            audio_codec=audio.codec or 'aac',
            audio_bitrate=audio.bitrate or None,
            audio_channels=audio.channels,
            audio_sample_rate=audio.sample_rate,
            additional_flags=list(options.additional_flags),
            hw_accel=hardware,
            **bitrates,
        )

    def build_args(self, options: FFmpegCommandOptions) -> List[str]:
        args = ['-i', options.input, '-c:v', options.video_codec]

        if options.quality_param and options.quality_value is not None:
            args.extend([f"-{options.quality_param}", str(options.quality_value)])

        if options.preset:
            args.extend(['-preset', options.preset])

        if options.video_bitrate:
            args.extend(['-b:v', options.video_bitrate])
        if options.max_video_bitrate:
            args.extend(['-maxrate', options.max_video_bitrate])
        if options.buffer_size:
            args.extend(['-bufsize', options.buffer_size])

        args.extend(['-c:a', options.audio_codec])
        # Stream copy keeps the source audio parameters
        if options.audio_codec != 'copy':
            if options.audio_bitrate:
                args.extend(['-b:a', options.audio_bitrate])
            if options.audio_channels:
                args.extend(['-ac', str(options.audio_channels)])
            if options.audio_sample_rate:
                args.extend(['-ar', str(options.audio_sample_rate)])

        args.extend(options.additional_flags)

        if options.pass_number:
            args.extend(['-pass', str(options.pass_number)])
            if options.pass_log_prefix:
                args.extend(['-passlogfile', options.pass_log_prefix])

        args.extend(['-f', 'mp4', '-movflags', '+faststart', '-y'])
        args.append(options.output)
        return args

    def build_pass_args(self, options: FFmpegCommandOptions, pass_number: int, pass_log_prefix: str) -> List[str]:
        """Arguments for one pass of a two-pass encode; pass 1 writes nothing."""
        output = os.devnull if pass_number == 1 else options.output
        return self.build_args(options.model_copy(update={
            'output': output,
            'pass_number': pass_number,
            'pass_log_prefix': pass_log_prefix,
        }))


class HardwareEncoderProbe:
    """Checks that a hardware encoder actually works by encoding one synthetic frame."""

    def __init__(
        self,
        runner: ProcessRunner,
        cache: Optional[MemoryCache] = None,
        ffmpeg_path: str = 'ffmpeg',
        timeout_ms: int = 10000,
    ):
        self.runner = runner
        self.cache = cache if cache is not None else MemoryCache("hardware-probe")
        self.ffmpeg_path = ffmpeg_path
        self.timeout_ms = timeout_ms

    def build_probe_args(self, codec: str) -> List[str]:
        return [
            '-hide_banner',
            '-f', 'lavfi',
            '-i', f"color=black:s={PROBE_RESOLUTION}:d=1",
            '-frames:v', '1',
            '-c:v', codec,
            '-f', 'null',
            '-',
        ]

    async def probe(self, codec: str) -> HardwareProbeResult:
        """Return the cached probe result for ``codec``, probing on first use."""
        return await self.cache.get_or_compute(codec, lambda: self._run_probe(codec))

    async def _run_probe(self, codec: str) -> HardwareProbeResult:
        logger.info("Probing hardware encoder", codec=codec)
        try:
            await self.runner.execute(
                self.ffmpeg_path,
                self.build_probe_args(codec),
                timeout_ms=self.timeout_ms,
                label=f"probe-{codec}",
            )
        except ProcessTimeoutError:
            reason = f"Probe encode timed out after {self.timeout_ms}ms"
            logger.warning("Hardware encoder unavailable", codec=codec, reason=reason)
            return HardwareProbeResult(available=False, reason=reason)
        except ProcessExecutionError as e:
            lines = [line for line in e.stderr.strip().splitlines() if line.strip()]
            reason = lines[-1] if lines else f"exit code {e.exit_code}"
            logger.warning("Hardware encoder unavailable", codec=codec, reason=reason)
            return HardwareProbeResult(available=False, reason=reason)

        logger.info("Hardware encoder available", codec=codec)
        return HardwareProbeResult(available=True)


async def get_ffmpeg_version(runner: ProcessRunner, ffmpeg_path: str = 'ffmpeg') -> str:
    result = await runner.execute(ffmpeg_path, ['-version'], timeout_ms=10000)
    first_line = (result.stdout or '').splitlines()
    return first_line[0] if first_line else 'Unknown'


async def list_video_encoders(runner: ProcessRunner, ffmpeg_path: str = 'ffmpeg') -> List[str]:
    """Names of the video encoders compiled into FFmpeg."""
    result = await runner.execute(ffmpeg_path, ['-hide_banner', '-encoders'], timeout_ms=10000)
    encoders = []
    for line in (result.stdout or '').splitlines():
        parts = line.split()
        # Encoder rows look like " V....D libx264   libx264 H.264 ..."
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0].startswith('V') and parts[1] != '=':
            encoders.append(parts[1])
    return encoders

