"""Logging for the ``iam_pkce`` package.

Every module logs through a child of the ``iam_pkce`` logger. The
handler installed here carries a filter that masks credential values in
``key=value`` pairs, so callback URLs and form bodies can be logged.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from iam_pkce.config import Config

LOGGER_NAME = "iam_pkce"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_SECRET_PARAM_PATTERN = re.compile(
    r"\b(code|code_verifier|access_token|refresh_token|id_token|state)=([^&\s]+)"
)

_handler: logging.Handler | None = None


class SecretParamFilter(logging.Filter):
    """Mask credential values in ``key=value`` pairs of a log message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET_PARAM_PATTERN.sub(r"\1=***", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(config: Config, stream: TextIO | None = None) -> None:
    """Install the package handler, or only adjust its level if present.

    Args:
        config: Settings providing ``log_level``
        stream: Output stream (defaults to stderr)
    """
    global _handler

    level = logging.getLevelName(config.log_level.value)
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel(level)

    if _handler is not None:
        _handler.setLevel(level)
        return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SecretParamFilter())

    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.propagate = False
    _handler = handler
    package_logger.debug("Logging at %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` under the package logger."""
    if name == LOGGER_NAME or name.startswith(f"{LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Remove the package handler so logging can be configured again."""
    global _handler
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
    _handler = None
