"""
oteltape Logging Configuration
==============================

Every module logs through ``logging.getLogger("oteltape.<module>")``. This
module only decides where records go and how they look:

- JSON lines (one object per record) for production and log files
- colored plain text for a development console
- size-based rotation of ``oteltape.log`` plus an errors-only file
- capture/replay session ids attached to each record from context variables

Usage:
    from oteltape.logging_config import session_context, setup_logging

    setup_logging(level="INFO", json_format=True, log_dir="/var/log/oteltape")

    with session_context(capture_session_id="cap-1"):
        logger.info("Batch stored")   # carries capture_session_id=cap-1
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

_capture_session_id: ContextVar[str] = ContextVar("capture_session_id", default="")
_replay_session_id: ContextVar[str] = ContextVar("replay_session_id", default="")

SERVICE_NAME = "oteltape"
PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET = "\033[0m"

DEFAULT_MODULE_LEVELS = {
    "oteltape": "INFO",
    "oteltape.capture": "INFO",
    "oteltape.replay": "INFO",
    "oteltape.storage": "WARNING",
    "oteltape.codec": "WARNING",
    "aiohttp": "WARNING",
    "asyncio": "WARNING",
}


# =============================================================================
# Session correlation
# =============================================================================


def get_capture_session_id() -> str:
    return _capture_session_id.get()


def get_replay_session_id() -> str:
    return _replay_session_id.get()


@contextmanager
def session_context(
    capture_session_id: Optional[str] = None,
    replay_session_id: Optional[str] = None,
) -> Iterator[None]:
    """
    Attach session ids to every log record emitted inside the block.

    Context variables are copied into tasks created inside the block, so a
    replay task started here keeps its replay_session_id.
    """
    tokens = []
    if capture_session_id:
        tokens.append((_capture_session_id, _capture_session_id.set(capture_session_id)))
    if replay_session_id:
        tokens.append((_replay_session_id, _replay_session_id.set(replay_session_id)))

    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _session_fields() -> dict[str, str]:
    fields = {}
    if capture_id := get_capture_session_id():
        fields["capture_session_id"] = capture_id
    if replay_id := get_replay_session_id():
        fields["replay_session_id"] = replay_id
    return fields


# =============================================================================
# Formatters and filters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, indent: Optional[int] = None) -> None:
        super().__init__()
        self.indent = indent

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {"file": record.filename, "line": record.lineno, "function": record.funcName},
            **_session_fields(),
        }

        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            entry.update(extra)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, indent=self.indent)


class ColoredFormatter(logging.Formatter):
    """Plain text with the level name colored when writing to a terminal."""

    def __init__(self, use_colors: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)

        # handlers share the record; color a copy
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{RESET}"
        return super().format(colored)


class ContextFilter(logging.Filter):
    """Expose session ids as record attributes for %-style formats."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.capture_session_id = get_capture_session_id()
        record.replay_session_id = get_replay_session_id()
        return True


# =============================================================================
# Setup
# =============================================================================


def _level(name: str) -> int:
    return getattr(logging, name.upper())


def _attach(
    root: logging.Logger,
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
    context_filter: logging.Filter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(context_filter)
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_dir: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    module_levels: Optional[dict[str, str]] = None,
    enable_console: bool = True,
    colored_console: bool = True,
) -> None:
    """
    Replace the root logger's handlers.

    Args:
        level: Default log level
        json_format: JSON lines instead of plain text
        log_dir: Directory for rotating log files (no file logging if None)
        max_bytes: Max log file size before rotation
        backup_count: Number of rotated files to keep
        module_levels: Per-logger levels, merged over DEFAULT_MODULE_LEVELS
        enable_console: Log to stdout
        colored_console: Color plain-text console output
    """
    root = logging.getLogger()
    root.setLevel(_level(level))
    root.handlers = []
    context_filter = ContextFilter()

    for module, module_level in {**DEFAULT_MODULE_LEVELS, **(module_levels or {})}.items():
        logging.getLogger(module).setLevel(_level(module_level))

    plain = logging.Formatter(fmt=PLAIN_FORMAT, datefmt=PLAIN_DATEFMT)

    if enable_console:
        if json_format:
            console_formatter: logging.Formatter = JSONFormatter()
        elif colored_console:
            console_formatter = ColoredFormatter(fmt=PLAIN_FORMAT, datefmt=PLAIN_DATEFMT)
        else:
            console_formatter = plain
        _attach(root, logging.StreamHandler(sys.stdout), _level(level), console_formatter, context_filter)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_formatter = JSONFormatter() if json_format else plain

        for filename, file_level in (("oteltape.log", _level(level)), ("oteltape.error.log", logging.ERROR)):
            handler = logging.handlers.RotatingFileHandler(
                log_path / filename, maxBytes=max_bytes, backupCount=backup_count
            )
            _attach(root, handler, file_level, file_formatter, context_filter)

    logging.getLogger("oteltape").info(f"Logging configured (level={level}, json={json_format})")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(
    environment: str = "development",
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> None:
    """
    Environment presets: production logs JSON at INFO, anything else
    colored text at DEBUG. ``OTELTAPE_LOG_DIR`` supplies a default log_dir.
    """
    is_prod = environment.lower() == "production"

    setup_logging(
        level=log_level or ("INFO" if is_prod else "DEBUG"),
        json_format=is_prod,
        log_dir=log_dir or os.environ.get("OTELTAPE_LOG_DIR"),
        colored_console=not is_prod,
        module_levels={"oteltape": "INFO" if is_prod else "DEBUG"},
    )


__all__ = [
    "JSONFormatter",
    "ColoredFormatter",
    "ContextFilter",
    "get_capture_session_id",
    "get_replay_session_id",
    "session_context",
    "setup_logging",
    "configure_logging",
    "get_logger",
    "DEFAULT_MODULE_LEVELS",
]
