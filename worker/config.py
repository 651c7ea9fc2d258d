"""
Pipeline configuration settings

All values can be overridden through environment variables or a .env file.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SEGMENT_DURATION = 10


class Settings(BaseSettings):
    """Video pipeline settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    VIDEOS_DIR: Path = Field(default=Path("./storage/data/videos"), description="Root directory for per-video workspaces")
    TEMP_DIR: Path = Field(default=Path("./storage/temp"), description="Scratch directory for pass logs and probes")
    VIDEO_LIBRARY_FILE: Path = Field(default=Path("./storage/data/videos.json"), description="JSON record of processed videos")

    # External binaries
    FFMPEG_PATH: str = Field(default="ffmpeg", description="FFmpeg binary")
    FFPROBE_PATH: str = Field(default="ffprobe", description="FFprobe binary")
    SHAKA_PACKAGER_PATH: str = Field(default="packager", description="Shaka Packager binary")
    NVIDIA_SMI_PATH: str = Field(default="nvidia-smi", description="GPU info binary")

    # Key derivation
    MASTER_SEED: str = Field(default="local-streamer-master-seed-change-me", description="PBKDF2 master seed")
    KEY_SALT_PREFIX: str = Field(default="local-streamer-video-key", description="Prefix mixed into per-video salt")
    KEY_DERIVATION_ROUNDS: int = Field(default=100000, ge=1, description="PBKDF2 iteration count")
    XOR_ENCRYPTION_KEY: str = Field(default="local-streamer-default-xor-key-2024-v1", description="Key for XOR file obfuscation")
    KEY_URL_TEMPLATE: str = Field(default="/api/video-key/{video_id}", description="Key retrieval URL written to keyinfo.txt")

    # Packaging
    SEGMENT_DURATION: int = Field(
        default=DEFAULT_SEGMENT_DURATION,
        validation_alias=AliasChoices("SEGMENT_DURATION", "HLS_SEGMENT_DURATION"),
        description="DASH segment duration in seconds",
    )
    ENCRYPTION_SCHEME: Literal["cenc", "cbcs", "none"] = Field(default="cenc")
    DRM_LABEL: str = Field(default="CENC")
    STATIC_LIVE_MPD: bool = Field(default=True)

    # Timeouts (seconds)
    TRANSCODE_TIMEOUT: int = Field(default=7200, description="Per ffmpeg invocation")
    PACKAGER_TIMEOUT: int = Field(default=1800, description="Per packager invocation")
    PROBE_TIMEOUT: int = Field(default=10, description="Hardware encoder probe")
    THUMBNAIL_TIMEOUT: int = Field(default=60)

    # Resources
    DISK_SPACE_MULTIPLIER: int = Field(default=3, description="Required free space as a multiple of input size")
    MAX_CONCURRENT_JOBS: int = Field(default=1, ge=1)
    MAX_QUEUE_SIZE: int = Field(default=20, ge=1)
    JOB_TIMEOUT: int = Field(default=3600, description="Queue-level timeout per job in seconds")

    # Logging
    LOG_LEVEL: str = Field(default="info")
    DEBUG: bool = Field(default=False)

    @field_validator("SEGMENT_DURATION", mode="before")
    @classmethod
    def validate_segment_duration(cls, v):
        return validate_segment_duration(v)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        if v.lower() not in ("debug", "info", "warning", "error", "critical"):
            raise ValueError(f"Invalid log level: {v}")
        return v.lower()


def validate_segment_duration(value: Optional[object]) -> int:
    """Return a usable segment duration, falling back to the default outside 1-60s."""
    try:
        duration = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SEGMENT_DURATION
    if duration < 1 or duration > 60:
        return DEFAULT_SEGMENT_DURATION
    return duration


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
