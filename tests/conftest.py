"""
Test configuration and fixtures
"""
import pytest

from storage.workspace import WorkspaceManager
from tests.mocks.process import FakeProcessRunner, create_dash_package, create_output_file
from worker.config import Settings
from worker.orchestrator import TranscodingOrchestrator
from worker.processors.streaming import ShakaPackager
from worker.processors.thumbnail import ThumbnailGenerator
from worker.processors.video import FFmpegTranscoder
from worker.security.keys import KeyManager
from worker.utils.cache import MemoryCache
from worker.utils.encoding import VideoAnalysis
from worker.utils.ffmpeg import HardwareEncoderProbe
from worker.utils.gpu import GPUDetector


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every directory into a temp dir."""
    return Settings(
        VIDEOS_DIR=tmp_path / "videos",
        TEMP_DIR=tmp_path / "temp",
        VIDEO_LIBRARY_FILE=tmp_path / "videos.json",
        MASTER_SEED="test-master-seed",
        KEY_SALT_PREFIX="test-salt",
        KEY_DERIVATION_ROUNDS=1000,
    )


@pytest.fixture
def fake_runner():
    return FakeProcessRunner()


@pytest.fixture
def workspace_manager(settings):
    return WorkspaceManager(settings.VIDEOS_DIR)


@pytest.fixture
def key_manager(settings):
    return KeyManager.from_settings(settings)


@pytest.fixture
def sample_analysis():
    """1080p source with AAC audio."""
    return VideoAnalysis(
        duration=10.0,
        bitrate=5128.0,
        audio_bitrate=128.0,
        audio_codec="aac",
        video_codec="h264",
        file_size=6_410_000,
        width=1920,
        height=1080,
        frame_rate=30.0,
    )


@pytest.fixture
def sample_input(tmp_path):
    path = tmp_path / "input" / "source.mp4"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x00" * 4096)
    return path


@pytest.fixture
def scripted_runner(fake_runner):
    """Runner whose ffmpeg and packager calls produce realistic output files."""
    fake_runner.when("ffmpeg", effect=create_output_file)
    fake_runner.when("packager", "--version", stdout="packager version v3.0.0\n")
    fake_runner.when("packager", "--mpd_output", effect=create_dash_package)
    return fake_runner


@pytest.fixture
def build_test_orchestrator(settings, workspace_manager, key_manager):
    """Factory wiring an orchestrator around a given runner."""

    def _build(runner):
        probe = HardwareEncoderProbe(runner, MemoryCache("hardware-probe"), ffmpeg_path="ffmpeg")
        return TranscodingOrchestrator(
            settings=settings,
            workspace_manager=workspace_manager,
            key_manager=key_manager,
            transcoder=FFmpegTranscoder(runner, probe, ffmpeg_path="ffmpeg", temp_dir=str(settings.TEMP_DIR)),
            packager=ShakaPackager(runner, packager_path="packager", videos_dir=settings.VIDEOS_DIR),
            thumbnail_generator=ThumbnailGenerator(runner, ffmpeg_path="ffmpeg"),
            gpu_detector=GPUDetector(runner),
            runner=runner,
        )

    return _build
