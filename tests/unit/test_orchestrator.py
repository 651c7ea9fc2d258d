"""
Tests for the video processing orchestrator
"""
from unittest.mock import AsyncMock, patch

import pydantic
import pytest

from tests.mocks.process import FakeProcessRunner
from worker.orchestrator import (
    PHASES,
    OrchestrationRequest,
    TranscodingOrchestrator,
    build_orchestrator,
)
from worker.utils.encoding import EnhancedEncodingOptions, LegacyEncodingOptions
from worker.utils.errors import OrchestrationError, PackagingFailedError, ValidationError
from worker.utils.process import ProcessRunner

ENCODERS_OUTPUT = """Encoders:
 V..... = Video
 A..... = Audio
 ------
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC (codec h264)
 V....D libx265              libx265 H.265 / HEVC (codec hevc)
 V....D hevc_nvenc           NVIDIA NVENC hevc encoder (codec hevc)
 V....D mpeg4                MPEG-4 part 2
 A....D aac                  AAC (Advanced Audio Coding)
"""


def make_request(sample_input, sample_analysis, **kwargs):
    kwargs.setdefault("encoding_options", LegacyEncodingOptions(encoder="cpu-h265"))
    return OrchestrationRequest(
        video_id="video-1",
        input_path=str(sample_input),
        video_analysis=sample_analysis,
        **kwargs,
    )


@pytest.mark.unit
class TestOrchestrationRequest:

    def test_options_without_kind_rejected(self, sample_input, sample_analysis):
        with pytest.raises(pydantic.ValidationError):
            make_request(sample_input, sample_analysis, encoding_options={"codec": "libx264"})

    def test_options_dict_dispatched_by_kind(self, sample_input, sample_analysis):
        request = make_request(
            sample_input, sample_analysis,
            encoding_options={"kind": "enhanced", "codec": "libx264", "quality_value": 20},
        )
        assert isinstance(request.encoding_options, EnhancedEncodingOptions)
        assert request.encoding_options.quality_value == 20

        request = make_request(sample_input, sample_analysis, encoding_options={"kind": "legacy"})
        assert isinstance(request.encoding_options, LegacyEncodingOptions)


@pytest.mark.unit
class TestExecute:

    @pytest.mark.asyncio
    async def test_full_pipeline(self, scripted_runner, build_test_orchestrator, sample_input,
                                 sample_analysis, settings):
        orchestrator = build_test_orchestrator(scripted_runner)

        result = await orchestrator.execute(make_request(sample_input, sample_analysis))

        root = settings.VIDEOS_DIR / "video-1"
        assert result.manifest_path == str(root / "manifest.mpd")
        assert result.thumbnail_path == str(root / "thumbnail.jpg")
        assert (root / "thumbnail.jpg").exists()
        assert result.transcoding.codec == "libx265"
        assert result.packaging.segment_count == 4

        # Temp artifacts go, the key stays for delivery
        assert (root / "key.bin").exists()
        assert not (root / "keyinfo.txt").exists()
        assert not (root / "intermediate.mp4").exists()
        assert not (root / "temp").exists()
        assert sample_input.exists()

        stats = result.statistics
        assert set(stats.phase_durations) == set(PHASES)
        assert all(stats.phase_durations[phase] > 0 for phase in PHASES)
        assert stats.failed_phase is None
        assert stats.end_time is not None
        assert stats.segment_count == 4
        assert stats.used_gpu is False
        assert stats.codec_used == "libx265"
        assert result.file_sizes.original == 4096
        assert result.file_sizes.packaged > 0
        assert stats.compression_ratio == pytest.approx(result.file_sizes.packaged / 4096)

        assert await orchestrator.get_processing_statistics("video-1") == stats

    @pytest.mark.asyncio
    async def test_missing_input(self, fake_runner, build_test_orchestrator, tmp_path, sample_analysis):
        orchestrator = build_test_orchestrator(fake_runner)

        with pytest.raises(OrchestrationError) as exc_info:
            await orchestrator.execute(make_request(tmp_path / "nope.mp4", sample_analysis))

        assert exc_info.value.phase == "validation"
        assert isinstance(exc_info.value.original_error, ValidationError)
        assert fake_runner.command_history == []

    @pytest.mark.asyncio
    async def test_invalid_encoding_options(self, fake_runner, build_test_orchestrator, sample_input,
                                            sample_analysis, settings):
        orchestrator = build_test_orchestrator(fake_runner)
        options = EnhancedEncodingOptions(
            codec="libx265", quality_param="crf", quality_value=23, additional_flags=["-y"]
        )

        with pytest.raises(OrchestrationError) as exc_info:
            await orchestrator.execute(make_request(sample_input, sample_analysis, encoding_options=options))

        assert exc_info.value.phase == "validation"
        assert "dangerous flag" in exc_info.value.message
        assert not (settings.VIDEOS_DIR / "video-1").exists()

    @pytest.mark.asyncio
    async def test_packaging_failure(self, scripted_runner, build_test_orchestrator, sample_input,
                                     sample_analysis, settings):
        scripted_runner.when("packager", "--mpd_output", exit_code=1, stderr="Segmenter failure")
        orchestrator = build_test_orchestrator(scripted_runner)

        with pytest.raises(OrchestrationError) as exc_info:
            await orchestrator.execute(make_request(sample_input, sample_analysis))

        error = exc_info.value
        assert error.phase == "packaging"
        assert error.video_id == "video-1"
        assert isinstance(error.original_error, PackagingFailedError)
        assert error.__cause__ is error.original_error
        assert error.code == error.original_error.code

        # The partial workspace is removed
        assert not (settings.VIDEOS_DIR / "video-1").exists()

        stats = await orchestrator.get_processing_statistics("video-1")
        assert stats.failed_phase == "packaging"
        for phase in ("validation", "workspace_setup", "key_generation", "transcoding", "packaging"):
            assert stats.phase_durations[phase] > 0
        assert stats.phase_durations["thumbnail"] == 0
        assert stats.phase_durations["cleanup"] == 0

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_original_error(self, scripted_runner, build_test_orchestrator,
                                                        sample_input, sample_analysis):
        scripted_runner.when("packager", "--mpd_output", exit_code=1, stderr="Segmenter failure")
        orchestrator = build_test_orchestrator(scripted_runner)

        with patch.object(
            orchestrator.workspace_manager,
            "cleanup_workspace",
            AsyncMock(side_effect=OSError("device busy")),
        ) as cleanup:
            with pytest.raises(OrchestrationError) as exc_info:
                await orchestrator.execute(make_request(sample_input, sample_analysis))

        cleanup.assert_awaited_once_with("video-1")
        assert isinstance(exc_info.value.original_error, PackagingFailedError)

    @pytest.mark.asyncio
    async def test_thumbnail_failure_is_tolerated(self, scripted_runner, build_test_orchestrator,
                                                  sample_input, sample_analysis):
        scripted_runner.when("ffmpeg", "gt(scene", exit_code=1, stderr="filter error")
        scripted_runner.when("ffmpeg", "-vframes", exit_code=1, stderr="Invalid data found")
        orchestrator = build_test_orchestrator(scripted_runner)

        result = await orchestrator.execute(make_request(sample_input, sample_analysis))

        assert result.thumbnail_path is None
        assert result.statistics.failed_phase is None
        assert result.statistics.phase_durations["thumbnail"] > 0

    @pytest.mark.asyncio
    async def test_thumbnail_disabled(self, scripted_runner, build_test_orchestrator, sample_input,
                                      sample_analysis):
        orchestrator = build_test_orchestrator(scripted_runner)

        result = await orchestrator.execute(
            make_request(sample_input, sample_analysis, generate_thumbnail=False)
        )

        assert result.thumbnail_path is None
        assert result.statistics.phase_durations["thumbnail"] == 0
        assert not any("gt(scene" in " ".join(args) for args in scripted_runner.commands_for("ffmpeg"))

    @pytest.mark.asyncio
    async def test_cleanup_original(self, scripted_runner, build_test_orchestrator, sample_input,
                                    sample_analysis):
        orchestrator = build_test_orchestrator(scripted_runner)

        await orchestrator.execute(make_request(sample_input, sample_analysis, cleanup_original=True))

        assert not sample_input.exists()

    @pytest.mark.asyncio
    async def test_unknown_video_statistics(self, fake_runner, build_test_orchestrator):
        assert await build_test_orchestrator(fake_runner).get_processing_statistics("missing") is None


@pytest.mark.unit
class TestSystemRequirements:

    @pytest.mark.asyncio
    async def test_all_available(self, build_test_orchestrator):
        runner = (
            FakeProcessRunner()
            .when("ffmpeg", "-version", stdout="ffmpeg version 6.1.1 Copyright (c) 2000-2023\n")
            .when("ffmpeg", "-encoders", stdout=ENCODERS_OUTPUT)
            .when("packager", "--version", stdout="packager version v3.0.0\n")
            .when("nvidia-smi", stdout="NVIDIA GeForce RTX 3080\n")
        )

        report = await build_test_orchestrator(runner).check_system_requirements()

        assert report.ffmpeg == {
            "available": True,
            "version": "ffmpeg version 6.1.1 Copyright (c) 2000-2023",
            "codecs": ["libx264", "libx265", "hevc_nvenc"],
        }
        assert report.packager == {"available": True, "version": "packager version v3.0.0"}
        assert report.disk_space["available"] > 0
        assert report.gpu == {"available": True, "name": "NVIDIA GeForce RTX 3080"}

    @pytest.mark.asyncio
    async def test_nothing_available(self, build_test_orchestrator):
        runner = FakeProcessRunner(unavailable=["ffmpeg", "packager", "nvidia-smi"])

        report = await build_test_orchestrator(runner).check_system_requirements()

        assert report.ffmpeg == {"available": False, "version": None, "codecs": []}
        assert report.packager == {"available": False, "version": None}
        assert report.gpu == {"available": False, "name": None}


@pytest.mark.unit
class TestBuildOrchestrator:

    def test_wiring_from_settings(self, settings):
        settings.FFMPEG_PATH = "/opt/ffmpeg/bin/ffmpeg"
        settings.SHAKA_PACKAGER_PATH = "/opt/shaka/packager"

        orchestrator = build_orchestrator(settings)

        assert isinstance(orchestrator, TranscodingOrchestrator)
        assert isinstance(orchestrator.runner, ProcessRunner)
        assert orchestrator.transcoder.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
        assert orchestrator.transcoder.timeout_ms == settings.TRANSCODE_TIMEOUT * 1000
        assert orchestrator.packager.packager_path == "/opt/shaka/packager"
        assert orchestrator.thumbnail_generator.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
        assert orchestrator.workspace_manager.videos_dir == settings.VIDEOS_DIR
        assert orchestrator.key_manager.master_seed == "test-master-seed"
        # One runner shared by every component
        assert orchestrator.transcoder.runner is orchestrator.runner
        assert orchestrator.packager.runner is orchestrator.runner
