"""
Structured logging configuration

Pipeline modules log through ``structlog.get_logger()``. Context bound with
``video_context`` (video id, phase) is merged into every event emitted
while the block runs, including events from the adapters.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from structlog.stdlib import LoggerFactory

from worker.config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure stdlib logging and structlog from settings."""
    settings = settings or get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    renderer = structlog.dev.ConsoleRenderer() if settings.DEBUG else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def video_context(video_id: str, **fields) -> Iterator[None]:
    """Bind ``video_id`` (and any extra fields) to log events inside the block."""
    with structlog.contextvars.bound_contextvars(video_id=video_id, **fields):
        yield
