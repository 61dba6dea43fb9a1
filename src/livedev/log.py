"""Logging setup for the dev session CLI"""

import logging
import os
from typing import Optional, Union

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"

# Chatty third-party loggers never go below WARNING
QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "websockets", "httpx", "httpcore", "botocore", "watchdog")


def setup_logging(level: Optional[Union[int, str]] = None) -> int:
    """Configure root logging; level defaults to LIVEDEV_LOG_LEVEL, then INFO

    Returns the numeric level in effect.
    """
    if level is None:
        level = os.getenv("LIVEDEV_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        numeric = logging.getLevelName(level.upper())
        level = numeric if isinstance(numeric, int) else logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return level
