"""Process-wide logging setup shared by the API, the desk agent and the simulator."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from keydesk.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Health polling and the agent worker hit local HTTP endpoints every few seconds.
QUIET_LOGGERS = ("urllib3.connectionpool", "httpx")

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    global _configured
    if _configured:
        return

    resolved_level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved_level, format=LOG_FORMAT, stream=sys.stdout)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
