"""Logging setup for the broker."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def init_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru for stderr plus optional file logging."""

    logger.remove()
    logger.add(sys.stderr, level=level.upper())

    if log_file is not None:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention="7 days")
