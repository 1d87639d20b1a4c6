"""Process-wide logging setup for the scheduling core."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from elms.utils.config import get_settings


_LOGGER_INITIALIZED = False
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once.

    Uvicorn's access logger is kept at WARNING so scheduling runs are not
    buried under request lines.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    resolved_level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved_level, format=_LOG_FORMAT, stream=sys.stdout)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
