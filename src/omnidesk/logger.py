"""Process logger, configured at import time.

Settings are not loaded yet when this module runs, so LOG_LEVEL and
LOG_FORMAT come straight from the environment. ``set_level`` applies the
configured level once Settings exist.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _renderers() -> list[structlog.types.Processor]:
    if os.environ.get("LOG_FORMAT", "console").lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def _configure() -> structlog.stdlib.BoundLogger:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

    # filter_by_level reads the stdlib root level
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_renderers(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger()


logger = _configure()


def set_level(level_name: str) -> None:
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))
