"""Process-wide logging for the ragdeploy CLI.

Level comes from ``--log-level`` or ``RAGDEPLOY_LOG_LEVEL``; output format from
``RAGDEPLOY_LOG_FORMAT`` (``console`` or ``json``). Modules keep using plain
``logging.getLogger``; structlog only renders the records on the root handler.
Logs always go to stderr so that YAML reports on stdout stay machine readable.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

import structlog

LEVEL_ENV = "RAGDEPLOY_LOG_LEVEL"
FORMAT_ENV = "RAGDEPLOY_LOG_FORMAT"
DEFAULT_LEVEL = logging.INFO

# Request-level chatter from the HTTP client is only shown at DEBUG.
_QUIET_LOGGERS = ("httpx", "httpcore")

# Applied to every stdlib record before rendering.
_PRE_CHAIN = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv(LEVEL_ENV) or "").strip().upper()
    value = logging.getLevelName(name) if name else DEFAULT_LEVEL
    return value if isinstance(value, int) else DEFAULT_LEVEL


def _wants_color(stream: TextIO) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def build_formatter(stream: TextIO, log_format: str | None = None) -> structlog.stdlib.ProcessorFormatter:
    chosen = (log_format or os.getenv(FORMAT_ENV) or "console").strip().lower()
    if chosen == "json":
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.dev.ConsoleRenderer(
                colors=_wants_color(stream),
                exception_formatter=structlog.dev.plain_traceback,
            )
        ]
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
        foreign_pre_chain=_PRE_CHAIN,
    )


def configure_logging(
    *,
    level: str | int | None = None,
    log_format: str | None = None,
    force: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Install one stderr handler on the root logger.

    Later calls only adjust the level unless ``force`` is set.
    """
    root = logging.getLogger()
    resolved = resolve_level(level)
    root.setLevel(resolved)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if resolved <= logging.DEBUG else logging.WARNING)

    if root.handlers and not force:
        for existing in root.handlers:
            existing.setLevel(resolved)
        return

    target = stream or sys.stderr
    handler = logging.StreamHandler(target)
    handler.setLevel(resolved)
    handler.setFormatter(build_formatter(target, log_format))
    root.handlers = [handler]
