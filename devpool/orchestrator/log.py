"""Logging configuration using loguru.

Intercepts stdlib logging so that httpx, mcp, anyio etc. all flow through
loguru with a unified format.  Poll-loop messages carry a ``poll`` extra
(the poll config id) rendered as ``[id]``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>[{extra[poll]}]</magenta> "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure loguru as the sole logging sink.

    Call this once at process startup.  ``log_file`` adds a rotating file
    sink (used by the poll daemon so ``devpool poll logs`` can read it).
    """
    level = level.upper()

    logger.remove()
    logger.configure(extra={"poll": "-"})
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=LOG_FORMAT,
            colorize=False,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )

    # Intercept all stdlib logging
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # Quiet down noisy libraries
    for name in ("httpx", "httpcore", "mcp"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={}, file={})", level, log_file)
