"""Structured logging singleton.

The module-level ``logger`` is usable at import time: it is configured from
``LOG_LEVEL`` / ``LOG_FORMAT`` in os.environ because Settings load after it.
Once Settings are loaded, :func:`configure` re-applies ``[logging]`` from
config.toml. ``format = "json"`` emits one JSON object per line for log
shippers; ``"console"`` is the human-readable default.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

LOG_FORMATS = ("console", "json")


def _processors(fmt: str) -> list[Any]:
    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure(level_name: str = "INFO", fmt: str = "console") -> None:
    """(Re)configure stdlib logging and structlog."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    # stdlib root logger first so structlog's filter_by_level sees the level
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=_processors(fmt if fmt in LOG_FORMATS else "console"),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # reconfiguration must reach the module-level logger
        cache_logger_on_first_use=False,
    )


configure(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FORMAT", "console"))
logger: structlog.stdlib.BoundLogger = structlog.get_logger("wabot")


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
