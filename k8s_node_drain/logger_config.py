import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {message}"


def setup_logger(level: str = "INFO", log_file: Optional[Path] = None):
    """Configure loguru sinks: colored stderr, plus an appended log file if requested"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT, colorize=True)

    if log_file is not None:
        try:
            logger.add(log_file, level=level.upper(), format=FILE_FORMAT, mode="a", enqueue=True)
        except OSError as e:
            raise ValueError(f"Cannot write to log file {log_file}: {e}") from e
        logger.info(f"Logging to {log_file}")

    return logger
