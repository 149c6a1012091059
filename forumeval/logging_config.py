"""Structured logging configuration using structlog.

Every event is written to stderr so the run summary on stdout stays
readable. ``console`` output is for humans; ``json`` emits one object per
line for log shipping.
"""

import logging
import sys

import structlog

NOISY_LIBRARIES = ("httpx", "httpcore", "openai", "asyncio")


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Configure structlog and quiet chatty third-party stdlib loggers.

    Args:
        log_level: Python log level name (DEBUG, INFO, WARNING, ERROR).
        log_format: ``console`` or ``json``.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
        exc_processor = structlog.processors.format_exc_info
    else:
        renderer = structlog.dev.ConsoleRenderer()
        exc_processor = structlog.dev.set_exc_info

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            exc_processor,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
