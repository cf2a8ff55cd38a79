from __future__ import annotations

import logging
import sys

from agentgate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


def _resolve_level(level: str | int) -> int:
    # Accept names or numeric levels; unknown names fall back to INFO.
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: str | int | None = None) -> None:
    # Configure the root logger once so module loggers share one handler.
    global _configured
    if _configured:
        return
    level_value = _resolve_level(level or get_settings().log_level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.setLevel(level_value)
    root.addHandler(handler)
    # Keep third-party client chatter out of gateway logs.
    logging.getLogger("httpx").setLevel(max(level_value, logging.WARNING))
    _configured = True
