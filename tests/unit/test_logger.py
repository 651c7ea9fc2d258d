"""
Tests for logging setup
"""
import pytest
import structlog

from worker.config import Settings
from worker.utils.logger import setup_logging, video_context


@pytest.mark.unit
class TestVideoContext:

    def test_binds_and_restores(self):
        with video_context("video-1", phase="transcoding"):
            assert structlog.contextvars.get_contextvars() == {
                "video_id": "video-1",
                "phase": "transcoding",
            }
        assert "video_id" not in structlog.contextvars.get_contextvars()

    def test_nested_contexts(self):
        with video_context("outer"):
            with video_context("inner"):
                assert structlog.contextvars.get_contextvars()["video_id"] == "inner"
            assert structlog.contextvars.get_contextvars()["video_id"] == "outer"


@pytest.mark.unit
class TestSetupLogging:

    def test_context_merged_into_events(self):
        setup_logging(Settings(LOG_LEVEL="debug"))
        processors = structlog.get_config()["processors"]
        assert processors[0] is structlog.contextvars.merge_contextvars

        with video_context("video-1"):
            event = structlog.contextvars.merge_contextvars(None, "info", {"event": "x"})
        assert event == {"event": "x", "video_id": "video-1"}

    def test_debug_uses_console_renderer(self):
        setup_logging(Settings(DEBUG=True))
        assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)
