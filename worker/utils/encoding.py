"""
Encoding options, presets and validation.

Encoding options are an explicit tagged union: ``kind='legacy'`` selects a
named encoder preset, ``kind='enhanced'`` carries the exact FFmpeg
parameters. Everything downstream works on the resolved enhanced form.
"""
import math
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from worker.utils.errors import ValidationError

logger = structlog.get_logger()

X264_PRESETS = ['ultrafast', 'superfast', 'veryfast', 'faster', 'fast', 'medium', 'slow', 'slower', 'veryslow', 'placebo']
NVENC_PRESETS = ['p1', 'p2', 'p3', 'p4', 'p5', 'p6', 'p7']

SUPPORTED_CODECS: Dict[str, Dict[str, Any]] = {
    'libx264': {'hardware_acceleration': False, 'presets': X264_PRESETS, 'quality_param': 'crf'},
    'libx265': {'hardware_acceleration': False, 'presets': X264_PRESETS, 'quality_param': 'crf'},
    'hevc_nvenc': {'hardware_acceleration': True, 'presets': NVENC_PRESETS, 'quality_param': 'cq'},
    'h264_nvenc': {'hardware_acceleration': True, 'presets': NVENC_PRESETS, 'quality_param': 'cq'},
    'h264_vaapi': {'hardware_acceleration': True, 'presets': [], 'quality_param': 'qp'},
    'hevc_vaapi': {'hardware_acceleration': True, 'presets': [], 'quality_param': 'qp'},
}

QUALITY_RANGE = (0, 51)
VALID_QUALITY_PARAMS = ['crf', 'cq', 'qp', 'qmin', 'qmax']
DANGEROUS_FLAGS = {'-i', '-o', '-y', '-n', '-f'}

# Hardware encoders at or below this quality value are encoded in two passes
TWO_PASS_QUALITY_THRESHOLD = 19

LEGACY_ENCODER_SETTINGS: Dict[str, Dict[str, Any]] = {
    'cpu-h265': {
        'codec': 'libx265',
        'quality_value': 18,
        'preset': 'slow',
        'quality_param': 'crf',
        'additional_flags': ['-tune', 'fastdecode'],
    },
    'gpu-h265': {
        'codec': 'hevc_nvenc',
        'quality_value': 19,
        'preset': 'p6',
        'quality_param': 'cq',
        'additional_flags': ['-tune', 'hq', '-rc', 'vbr'],
    },
}

QUALITY_MAPPINGS: Dict[str, Dict[str, Dict[str, Any]]] = {
    'high': {
        'cpu': {'quality_value': 18, 'preset': 'slow', 'additional_flags': ['-tune', 'fastdecode']},
        'gpu': {'quality_value': 19, 'preset': 'p7', 'additional_flags': ['-tune', 'hq', '-rc', 'vbr']},
    },
    'medium': {
        'cpu': {'quality_value': 23, 'preset': 'medium', 'additional_flags': ['-tune', 'fastdecode']},
        'gpu': {'quality_value': 23, 'preset': 'p6', 'additional_flags': ['-tune', 'hq', '-rc', 'vbr']},
    },
    'fast': {
        'cpu': {'quality_value': 28, 'preset': 'fast', 'additional_flags': ['-tune', 'fastdecode']},
        'gpu': {'quality_value': 28, 'preset': 'p4', 'additional_flags': ['-tune', 'fastdecode', '-rc', 'cbr']},
    },
}

SEGMENT_NAME_PATTERNS = [
    (re.compile(r'^init\.mp4$'), 'init'),
    (re.compile(r'^segment-(\d+)\.m4s$'), 'media'),
    (re.compile(r'^(video|audio)/init\.mp4$'), 'init'),
    (re.compile(r'^(video|audio)/segment-(\d+)\.m4s$'), 'media'),
]


class AudioSettings(BaseModel):
    codec: str = 'aac'
    bitrate: str = '128k'
    channels: int = 2
    sample_rate: int = 44100


class LegacyEncodingOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal['legacy'] = 'legacy'
    encoder: Literal['cpu-h265', 'gpu-h265'] = 'cpu-h265'


class EnhancedEncodingOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal['enhanced'] = 'enhanced'
    codec: str
    preset: Optional[str] = None
    quality_param: str = 'crf'
    quality_value: int = 23
    additional_flags: List[str] = Field(default_factory=list)
    target_video_bitrate: Optional[int] = None
    audio_settings: Optional[AudioSettings] = None


EncodingOptions = Annotated[
    Union[LegacyEncodingOptions, EnhancedEncodingOptions],
    Field(discriminator='kind'),
]

_encoding_options_adapter = TypeAdapter(EncodingOptions)


class VideoAnalysis(BaseModel):
    """Technical description of a source video (bitrates in kbps, duration in seconds)."""
    model_config = ConfigDict(frozen=True)

    duration: float = 0.0
    bitrate: float = 0.0
    audio_bitrate: float = 0.0
    audio_codec: str = 'unknown'
    video_codec: str = 'unknown'
    file_size: int = 0
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0


class BitrateCalculation(BaseModel):
    target_video_bitrate: int
    audio_settings: AudioSettings


def parse_encoding_options(data: Union[Dict[str, Any], LegacyEncodingOptions, EnhancedEncodingOptions]):
    """Build encoding options from a dict carrying an explicit ``kind``."""
    if isinstance(data, (LegacyEncodingOptions, EnhancedEncodingOptions)):
        return data
    if not isinstance(data, dict) or 'kind' not in data:
        raise ValidationError("Encoding options must declare kind 'legacy' or 'enhanced'", field='kind')
    try:
        return _encoding_options_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid encoding options: {e.errors()[0]['msg']}", field='encoding_options') from e


def is_hardware_codec(codec: str) -> bool:
    return 'nvenc' in codec or 'vaapi' in codec


def resolve_encoding_options(options) -> EnhancedEncodingOptions:
    """Expand legacy encoder presets into explicit enhanced options."""
    if isinstance(options, EnhancedEncodingOptions):
        return options
    settings = LEGACY_ENCODER_SETTINGS[options.encoder]
    return EnhancedEncodingOptions(
        codec=settings['codec'],
        preset=settings['preset'],
        quality_param=settings['quality_param'],
        quality_value=settings['quality_value'],
        additional_flags=list(settings['additional_flags']),
        audio_settings=AudioSettings(),
    )


def needs_two_pass(options: EnhancedEncodingOptions) -> bool:
    return is_hardware_codec(options.codec) and options.quality_value <= TWO_PASS_QUALITY_THRESHOLD


def calculate_optimal_bitrates(analysis: VideoAnalysis) -> BitrateCalculation:
    """Fit video + audio under the source bitrate, never going below 500 kbps video."""
    max_total_bitrate = math.floor(analysis.bitrate)

    if analysis.audio_codec == 'aac' and analysis.audio_bitrate <= 160:
        audio_settings = AudioSettings(codec='copy', bitrate='')
        audio_bitrate_value = analysis.audio_bitrate
    else:
        target_audio_bitrate = min(128, analysis.audio_bitrate * 0.8)
        audio_settings = AudioSettings(codec='aac', bitrate=f"{math.floor(target_audio_bitrate)}k")
        audio_bitrate_value = target_audio_bitrate

    # 50 kbps covers segment container overhead
    target_video_bitrate = max(500, math.floor(max_total_bitrate - audio_bitrate_value - 50))

    logger.debug(
        "Bitrate calculation",
        source_bitrate=analysis.bitrate,
        video_bitrate=target_video_bitrate,
        audio_codec=audio_settings.codec,
        audio_bitrate=audio_bitrate_value,
    )
    return BitrateCalculation(target_video_bitrate=target_video_bitrate, audio_settings=audio_settings)


def build_enhanced_options(quality: str, use_gpu: bool, analysis: VideoAnalysis) -> EnhancedEncodingOptions:
    """Create enhanced options from a quality tier and the source analysis."""
    if quality not in QUALITY_MAPPINGS:
        raise ValidationError(f"Unknown quality tier: {quality}", field='quality')

    tier = QUALITY_MAPPINGS[quality]['gpu' if use_gpu else 'cpu']
    bitrates = calculate_optimal_bitrates(analysis)
    return EnhancedEncodingOptions(
        codec='hevc_nvenc' if use_gpu else 'libx265',
        preset=tier['preset'],
        quality_param='cq' if use_gpu else 'crf',
        quality_value=tier['quality_value'],
        additional_flags=list(tier['additional_flags']),
        target_video_bitrate=bitrates.target_video_bitrate,
        audio_settings=bitrates.audio_settings,
    )


class EncodingValidationService:
    """Validates and sanitizes encoding options before they reach FFmpeg."""

    def validate(self, options) -> Dict[str, Any]:
        if isinstance(options, LegacyEncodingOptions):
            return self._validate_legacy(options)
        return self._validate_enhanced(options)

    def _validate_legacy(self, options: LegacyEncodingOptions) -> Dict[str, Any]:
        errors = []
        warnings = []

        if options.encoder not in LEGACY_ENCODER_SETTINGS:
            errors.append(f"Invalid encoder: {options.encoder}")
        elif options.encoder.startswith('cpu-'):
            warnings.append("CPU encoding may be slower than GPU encoding")

        return self._result(options, errors, warnings)

    def _validate_enhanced(self, options: EnhancedEncodingOptions) -> Dict[str, Any]:
        errors: List[str] = []
        warnings: List[str] = []

        codec_info = SUPPORTED_CODECS.get(options.codec)
        if codec_info is None:
            errors.append(f"Unsupported codec: {options.codec}")
        elif codec_info['hardware_acceleration']:
            warnings.append(f"Hardware codec {options.codec} requires GPU support")

        if options.quality_param not in VALID_QUALITY_PARAMS:
            errors.append(f"Invalid quality parameter: {options.quality_param}")

        low, high = QUALITY_RANGE
        if options.quality_value < low or options.quality_value > high:
            errors.append(f"Quality value out of range: {options.quality_value} (expected {low}-{high})")
        elif options.quality_value < 10:
            warnings.append("Very low quality value may result in unnecessarily large files")
        elif options.quality_value > 35:
            warnings.append("High quality value may result in poor visual quality")

        if options.preset and codec_info and codec_info['presets']:
            if options.preset not in codec_info['presets']:
                errors.append(f"Invalid preset for {options.codec}: {options.preset}")

        for flag in options.additional_flags:
            if flag in DANGEROUS_FLAGS:
                errors.append(f"Potentially dangerous flag: {flag}")
        if len(options.additional_flags) > 10:
            warnings.append("Large number of additional flags may cause unexpected behavior")

        return self._result(options, errors, warnings)

    def _result(self, options, errors: List[str], warnings: List[str]) -> Dict[str, Any]:
        return {
            'is_valid': not errors,
            'errors': errors,
            'warnings': warnings,
            'sanitized_options': self.sanitize(options) if not errors else None,
        }

    def sanitize(self, options):
        if isinstance(options, LegacyEncodingOptions):
            return options.model_copy()
        low, high = QUALITY_RANGE
        return options.model_copy(update={
            'codec': options.codec.lower(),
            'preset': options.preset.lower() if options.preset else None,
            'quality_param': options.quality_param.lower(),
            'quality_value': max(low, min(high, options.quality_value)),
            'additional_flags': [f for f in options.additional_flags if f.strip()],
        })

    def is_valid_segment_name(self, filename: str) -> Dict[str, Any]:
        """Classify an init/media segment file name, optionally prefixed by stream dir."""
        for pattern, segment_type in SEGMENT_NAME_PATTERNS:
            match = pattern.match(filename)
            if not match:
                continue
            groups = match.groups()
            result: Dict[str, Any] = {'valid': True, 'segment_type': segment_type, 'stream_type': None}
            if groups and groups[0] in ('video', 'audio'):
                result['stream_type'] = groups[0]
                groups = groups[1:]
            if segment_type == 'media' and groups:
                result['segment_number'] = int(groups[0])
            return result
        return {'valid': False}

    def get_supported_codecs(self) -> List[Dict[str, Any]]:
        return [
            {'codec': codec, 'quality_range': QUALITY_RANGE, **info}
            for codec, info in SUPPORTED_CODECS.items()
        ]

    def is_codec_supported(self, codec: str) -> bool:
        return codec in SUPPORTED_CODECS
