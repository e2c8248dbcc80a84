"""Logging configuration for echostream.

Several streams can run at once and their frames interleave in the log, so
the streaming loggers get a level of their own: ``stream_log_level`` can
turn on per-frame tracing without flooding the rest of the output, or keep
the frame chatter quiet while the application logs at DEBUG. ``debug=True``
switches everything to DEBUG and adds millisecond timestamps.
"""

import logging
import sys
from typing import Literal

from echostream.settings import get_settings

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

APP_LOGGER = "echostream"
STREAMING_LOGGER = "echostream.streaming"

CONSOLE_FORMAT = "%(levelname)s | %(name)s | %(message)s"
DEBUG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)s | %(name)s | %(message)s"

# httpx logs every request line at INFO, once per streamed turn
NOISY_LOGGERS = [
    "httpcore",
    "httpx",
    "asyncio",
    "markdown_it",
]


def suppress_noisy_loggers() -> None:
    """Suppress noisy third-party loggers.

    Call this after importing libraries that configure their own logging.
    """
    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.WARNING)
        logger.handlers.clear()


def configure_logging(
    level: LogLevel | None = None,
    stream_level: LogLevel | None = None,
) -> None:
    """Configure application logging.

    Args:
        level: Override log level (defaults to DEBUG when settings.debug is
            set, else settings.log_level)
        stream_level: Override the level of ``echostream.streaming``
            (defaults to settings.stream_log_level, then to ``level``)
    """
    settings = get_settings()
    log_level = level or ("DEBUG" if settings.debug else settings.log_level)
    frame_level = stream_level or settings.stream_log_level or log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    if settings.debug:
        console_handler.setFormatter(logging.Formatter(DEBUG_FORMAT, datefmt="%H:%M:%S"))
    else:
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    logging.getLogger(APP_LOGGER).setLevel(getattr(logging, log_level))
    logging.getLogger(STREAMING_LOGGER).setLevel(getattr(logging, frame_level))

    suppress_noisy_loggers()


# Configure logging on module import
configure_logging()
