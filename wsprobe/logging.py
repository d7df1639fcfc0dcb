"""
Logging setup for the wsprobe command line.

Diagnostics go to stderr so the frames, fields and fuzz results printed on
stdout stay pipeable. Events are rendered as JSON lines by structlog on top
of stdlib logging; with ``to_file`` a rotating copy is kept under
``settings.log_dir``.

The websockets client logs every frame at DEBUG. Its logger is held at
WARNING unless wsprobe itself runs at DEBUG.
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog
import structlog.stdlib

from wsprobe.config import settings

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_HANDLER_TAG = "_wsprobe_handler"


def log_file_path(component: str) -> Path:
    return settings.log_dir / f"{component}.log"


def _build_file_handler(component: str) -> RotatingFileHandler:
    log_path = log_file_path(component)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    return handler


def _remove_own_handlers(root: logging.Logger) -> None:
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_TAG, False)]:
        root.removeHandler(handler)
        handler.close()


def setup_logging(
    component: str = "wsprobe", level: int = logging.INFO, to_file: bool = True
) -> Optional[Path]:
    """
    Configure structlog + stdlib logging for a wsprobe run.

    Safe to call more than once; handlers from an earlier call are replaced
    rather than stacked. Returns the log file path when ``to_file`` is set.
    """
    root = logging.getLogger()
    _remove_own_handlers(root)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_path = None
    if to_file:
        handlers.append(_build_file_handler(component))
        log_path = log_file_path(component)

    formatter = logging.Formatter(_DEFAULT_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_TAG, True)
        root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("websockets").setLevel(
        level if level <= logging.DEBUG else logging.WARNING
    )

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger().debug(
        "logging_initialized",
        component=component,
        log_file=str(log_path) if log_path else None,
    )
    return log_path
