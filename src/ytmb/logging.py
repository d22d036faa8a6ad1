"""Logging for ytmb: structlog on top of the stdlib ``logging`` tree.

Two rotating files are written under the log directory:

``ytmb.log``
    Every event, rendered ``key=value`` for people.
``sync.log``
    Only events from ``ytmb.sync.*`` loggers, one JSON object per line.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from ytmb.config import AppConfig

_ROTATE_AT = 10 * 1024 * 1024
_KEEP = 5

# Third-party loggers that are chatty at INFO/DEBUG.
_QUIET = ("ytmusicapi", "urllib3", "requests", "aiosqlite")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_PRE_CHAIN)


def _rotating(path: Path, formatter: logging.Formatter, only: str | None = None) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_ROTATE_AT, backupCount=_KEEP, encoding="utf-8")
    handler.setFormatter(formatter)
    if only:
        handler.addFilter(logging.Filter(only))
    return handler


def _log_unhandled(exc_type: type[BaseException], exc_value: BaseException, exc_tb: object) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logging.getLogger("ytmb").critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_tb))


def setup_logging(log_level: str = "info", log_dir: Path | None = None) -> None:
    """Route structlog through stdlib logging at *log_level*.

    Without *log_dir* no handlers are attached, which keeps tests quiet.
    Unknown level names fall back to INFO.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating(log_dir / "ytmb.log", _formatter(structlog.dev.ConsoleRenderer(colors=False))))
        root.addHandler(
            _rotating(log_dir / "sync.log", _formatter(structlog.processors.JSONRenderer()), only="ytmb.sync")
        )

    for name in _QUIET:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    sys.excepthook = _log_unhandled  # type: ignore[assignment]


def setup_logging_from_config(config: AppConfig) -> None:
    """Apply ``[logging] log_level`` and write under ``config.log_dir``."""
    setup_logging(log_level=config.logging.log_level, log_dir=config.log_dir)
