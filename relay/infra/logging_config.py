"""Logging setup shared by the CLI, the bridge runtime and the status API."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from relay.config import get_settings

ROOT_LOGGER_NAME = "relay"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = (
    "slack_sdk",
    "slack_sdk.socket_mode",
    "websockets",
    "httpx",
    "httpcore",
    "aiohttp.access",
)


class LoggingConfig:
    """Configure the root handler once; repeated construction is a no-op."""

    _configured = False

    def __init__(self, level: Optional[str] = None) -> None:
        if LoggingConfig._configured:
            return
        level_name = (level or get_settings().log_level or "INFO").upper()
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

        root = logging.getLogger()
        root.setLevel(logging.WARNING)
        root.addHandler(handler)

        logging.getLogger(ROOT_LOGGER_NAME).setLevel(level_name)
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        LoggingConfig._configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger under the relay namespace."""
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
