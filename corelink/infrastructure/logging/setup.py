"""
Logging setup using loguru.

Modules log through ``logging.getLogger(__name__)``; an intercept handler
forwards those records to loguru, which owns the sinks. Console output
always goes to stderr: a Process-mode helper's stdout carries frames.
"""

import inspect
import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as loguru_logger

from ..config.models import LoggingConfig

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


class InterceptHandler(logging.Handler):
    """Route standard library log records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        # find the caller outside the logging module so loguru reports it
        frame, depth = inspect.currentframe(), 0
        while frame is not None and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(config: LoggingConfig, log_name: str = "corelink",
                  core_id: Optional[int] = None) -> None:
    """
    Setup application logging with the given configuration.

    Args:
        config: Logging configuration
        log_name: Base name of the log file
        core_id: Core the process runs as, added to every record
    """
    loguru_logger.remove()
    loguru_logger.configure(extra={'core_id': core_id if core_id is not None else 0})

    if config.console_enabled:
        loguru_logger.add(
            sys.stderr,
            format=config.format,
            level=config.level,
            colorize=sys.stderr.isatty(),
            backtrace=True,
            diagnose=False,
        )

    if config.file_enabled:
        log_dir = Path(config.log_directory)
        log_dir.mkdir(parents=True, exist_ok=True)
        loguru_logger.add(
            log_dir / f"{log_name}.log",
            format=FILE_FORMAT,
            level=config.level,
            rotation=config.max_file_size,
            retention=config.backup_count,
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access", "aiohttp.access"):
        noisy_logger = logging.getLogger(noisy)
        noisy_logger.handlers = [InterceptHandler()]
        noisy_logger.propagate = False

    logging.getLogger(__name__).debug(f"Logging configured at level {config.level}")
