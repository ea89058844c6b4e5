# predblink/log_config.py
import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with stdout plus an optional rotating file."""
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=level.upper())

    if log_file:
        logger.add(
            log_file,
            rotation="100 MB",
            retention="14 days",
            format=LOG_FORMAT,
            level=level.upper()
        )
