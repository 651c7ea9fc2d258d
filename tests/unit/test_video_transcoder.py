"""
Tests for the FFmpeg transcoding adapter
"""
import os
from pathlib import Path

import pydantic
import pytest

from tests.mocks.process import FakeProcessRunner, create_output_file
from worker.processors.video import FFmpegTranscoder, TranscodingRequest
from worker.utils.encoding import EnhancedEncodingOptions, LegacyEncodingOptions
from worker.utils.errors import (
    InsufficientResourcesError,
    TranscodingFailedError,
    TranscodingSystemUnavailableError,
    UnsupportedVideoCodecError,
)
from worker.utils.ffmpeg import HardwareEncoderProbe


def make_transcoder(runner, tmp_path):
    return FFmpegTranscoder(runner, HardwareEncoderProbe(runner), temp_dir=str(tmp_path / "temp"))


def make_request(tmp_path, options, analysis, **kwargs):
    return TranscodingRequest(
        video_id="video-1",
        input_path=str(tmp_path / "source.mp4"),
        output_path=str(tmp_path / "intermediate.mp4"),
        encoding_options=options,
        video_analysis=analysis,
        **kwargs,
    )


def is_probe(args):
    return "lavfi" in args


@pytest.mark.unit
class TestSinglePassTranscoding:

    @pytest.mark.asyncio
    async def test_cpu_transcode(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner().when("ffmpeg", effect=create_output_file)
        transcoder = make_transcoder(runner, tmp_path)

        result = await transcoder.transcode(
            make_request(tmp_path, LegacyEncodingOptions(encoder="cpu-h265"), sample_analysis)
        )

        assert result.used_gpu is False
        assert result.codec == "libx265"
        assert result.two_pass is False
        assert result.file_size == len(b"fake media data")
        assert result.duration_ms > 0

        calls = runner.commands_for("ffmpeg")
        assert len(calls) == 1
        assert "-pass" not in calls[0]
        assert calls[0][calls[0].index("-b:v") + 1] == "5000k"
        assert runner.command_history[0]["label"] == "transcode-video-1"

    @pytest.mark.asyncio
    async def test_ffmpeg_unavailable(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner(unavailable=["ffmpeg"])

        with pytest.raises(TranscodingSystemUnavailableError):
            await make_transcoder(runner, tmp_path).transcode(
                make_request(tmp_path, LegacyEncodingOptions(), sample_analysis)
            )
        assert runner.command_history == []

    @pytest.mark.asyncio
    async def test_missing_output(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner()

        with pytest.raises(TranscodingFailedError):
            await make_transcoder(runner, tmp_path).transcode(
                make_request(tmp_path, LegacyEncodingOptions(), sample_analysis)
            )

    @pytest.mark.asyncio
    async def test_progress_callback(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner().when(
            "ffmpeg",
            effect=create_output_file,
            output_lines=[
                "frame=  150 fps=30 time=00:00:05.00 bitrate=5000.0kbits/s speed=1.0x",
                "frame=  300 fps=30 time=00:00:10.00 bitrate=5000.0kbits/s speed=1.0x",
            ],
        )
        seen = []

        await make_transcoder(runner, tmp_path).transcode(make_request(
            tmp_path,
            LegacyEncodingOptions(),
            sample_analysis,
            progress_callback=lambda progress: seen.append(progress.percentage),
        ))

        assert seen == [50.0, 100.0]

    @pytest.mark.parametrize("stderr,expected", [
        ("Unknown encoder 'libfoo'", UnsupportedVideoCodecError),
        ("Codec hevc is not supported in this build", UnsupportedVideoCodecError),
        ("av_interleaved_write_frame(): No space left on device", InsufficientResourcesError),
        ("Cannot allocate memory", InsufficientResourcesError),
        ("Invalid data found when processing input", TranscodingFailedError),
    ])
    @pytest.mark.asyncio
    async def test_error_classification(self, tmp_path, sample_analysis, stderr, expected):
        runner = FakeProcessRunner().when("ffmpeg", "-c:v", exit_code=1, stderr=stderr)

        with pytest.raises(expected) as exc_info:
            await make_transcoder(runner, tmp_path).transcode(
                make_request(tmp_path, LegacyEncodingOptions(), sample_analysis)
            )
        assert exc_info.value.__cause__ is not None

    @pytest.mark.asyncio
    async def test_timeout_is_transcoding_failure(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner().when("ffmpeg", "-c:v", timeout=True)

        with pytest.raises(TranscodingFailedError) as exc_info:
            await make_transcoder(runner, tmp_path).transcode(
                make_request(tmp_path, LegacyEncodingOptions(), sample_analysis)
            )
        assert "timed out" in exc_info.value.message


@pytest.mark.unit
class TestHardwareTranscoding:

    @pytest.mark.asyncio
    async def test_two_pass_for_high_quality_gpu(self, tmp_path, sample_analysis):
        prefix = tmp_path / "logs" / "ffmpeg-pass-video-1"
        prefix.parent.mkdir()

        def encode(args):
            if "-pass" in args:
                Path(f"{prefix}-0.log").write_text("stats")
                Path(f"{prefix}-0.log.mbtree").write_bytes(b"tree")
            create_output_file(args)

        runner = FakeProcessRunner().when("ffmpeg", "-c:v", effect=encode)
        transcoder = make_transcoder(runner, tmp_path)

        result = await transcoder.transcode(make_request(
            tmp_path,
            LegacyEncodingOptions(encoder="gpu-h265"),
            sample_analysis,
            pass_log_dir=str(prefix.parent),
        ))

        assert result.two_pass is True
        assert result.used_gpu is True

        probe_calls = [args for args in runner.commands_for("ffmpeg") if is_probe(args)]
        encode_calls = [args for args in runner.commands_for("ffmpeg") if not is_probe(args)]
        assert len(probe_calls) == 1
        assert len(encode_calls) == 2

        first, second = encode_calls
        assert first[first.index("-pass") + 1] == "1"
        assert first[-1] == os.devnull
        assert second[second.index("-pass") + 1] == "2"
        assert second[-1] == str(tmp_path / "intermediate.mp4")
        for args in encode_calls:
            assert args[args.index("-passlogfile") + 1] == str(prefix)
        # Hardware ladder bitrate for a 1080p source
        assert second[second.index("-b:v") + 1] == "6000k"

        assert not Path(f"{prefix}-0.log").exists()
        assert not Path(f"{prefix}-0.log.mbtree").exists()

    @pytest.mark.asyncio
    async def test_pass_logs_removed_on_failure(self, tmp_path, sample_analysis):
        prefix = tmp_path / "ffmpeg-pass-video-1"

        def fail_second_pass(args):
            Path(f"{prefix}-0.log").write_text("stats")

        runner = (
            FakeProcessRunner()
            .when("ffmpeg", "-pass 1", effect=fail_second_pass)
            .when("ffmpeg", "-pass 2", exit_code=1, stderr="Error while encoding")
        )

        with pytest.raises(TranscodingFailedError):
            await make_transcoder(runner, tmp_path).transcode(make_request(
                tmp_path,
                EnhancedEncodingOptions(codec="hevc_nvenc", quality_param="cq", quality_value=15),
                sample_analysis,
                pass_log_dir=str(tmp_path),
            ))

        assert not Path(f"{prefix}-0.log").exists()

    @pytest.mark.asyncio
    async def test_single_pass_above_threshold(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner().when("ffmpeg", "-c:v", effect=create_output_file)

        result = await make_transcoder(runner, tmp_path).transcode(make_request(
            tmp_path,
            EnhancedEncodingOptions(codec="hevc_nvenc", quality_param="cq", quality_value=23, preset="p5"),
            sample_analysis,
        ))

        assert result.two_pass is False
        encode_calls = [args for args in runner.commands_for("ffmpeg") if not is_probe(args)]
        assert len(encode_calls) == 1
        # Enhanced options without a target bitrate leave rate control to the quality flag
        assert "-b:v" not in encode_calls[0]

    @pytest.mark.asyncio
    async def test_unusable_gpu_fails_without_fallback(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner().when(
            "ffmpeg", "lavfi", exit_code=1, stderr="Cannot load libnvidia-encode.so.1"
        )

        with pytest.raises(TranscodingFailedError) as exc_info:
            await make_transcoder(runner, tmp_path).transcode(
                make_request(tmp_path, LegacyEncodingOptions(encoder="gpu-h265"), sample_analysis)
            )

        assert "hevc_nvenc" in exc_info.value.message
        assert "libnvidia-encode" in exc_info.value.message
        assert all(is_probe(args) for args in runner.commands_for("ffmpeg"))

    @pytest.mark.asyncio
    async def test_probe_runs_once_per_codec(self, tmp_path, sample_analysis):
        runner = FakeProcessRunner().when("ffmpeg", "-c:v", effect=create_output_file)
        transcoder = make_transcoder(runner, tmp_path)
        options = EnhancedEncodingOptions(codec="h264_nvenc", quality_param="cq", quality_value=25)

        await transcoder.transcode(make_request(tmp_path, options, sample_analysis))
        await transcoder.transcode(make_request(tmp_path, options, sample_analysis))

        probe_calls = [args for args in runner.commands_for("ffmpeg") if is_probe(args)]
        assert len(probe_calls) == 1


@pytest.mark.unit
class TestPassLogCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_pass_logs(self, tmp_path):
        prefix = str(tmp_path / "ffmpeg-pass-v")
        Path(f"{prefix}-0.log").write_text("x")

        removed = await make_transcoder(FakeProcessRunner(), tmp_path).cleanup_pass_logs(prefix)

        assert removed == [f"{prefix}-0.log"]

    def test_default_pass_log_prefix(self, tmp_path, sample_analysis):
        transcoder = make_transcoder(FakeProcessRunner(), tmp_path)
        request = make_request(tmp_path, LegacyEncodingOptions(), sample_analysis)
        assert transcoder.pass_log_prefix(request) == str(tmp_path / "temp" / "ffmpeg-pass-video-1")


@pytest.mark.unit
class TestTranscodingRequest:

    def test_options_without_kind_rejected(self, tmp_path, sample_analysis):
        # An enhanced-looking dict must not be coerced into the legacy preset
        with pytest.raises(pydantic.ValidationError):
            make_request(tmp_path, {"codec": "libx264", "quality_value": 20}, sample_analysis)

    def test_options_dict_dispatched_by_kind(self, tmp_path, sample_analysis):
        request = make_request(tmp_path, {"kind": "enhanced", "codec": "libx264"}, sample_analysis)

        assert isinstance(request.encoding_options, EnhancedEncodingOptions)
