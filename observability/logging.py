"""Logging setup for docwatch.

Console output is human readable by default; files and ``DOCWATCH_LOG_JSON``
get one JSON object per line. ``StructuredLogger`` carries per-component
context (source id, request id, attempt) as ``ctx_*`` record attributes so
both formatters can render it.
"""

from __future__ import annotations
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

SERVICE_NAME = "docwatch"
CONTEXT_PREFIX = "ctx_"

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "taskName",
}

# Chatty third-party loggers
_QUIET_LOGGERS = ("aiohttp.access", "apscheduler", "urllib3", "sqlalchemy.engine")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _RESERVED_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for files and log aggregators."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_record_extras(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """``time | LEVEL | logger | message | key=value ...`` for terminals."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        parts = [stamp, f"{record.levelname:8}", record.name, record.getMessage()]

        context = [
            f"{key[len(CONTEXT_PREFIX):]}={value}"
            for key, value in vars(record).items()
            if key.startswith(CONTEXT_PREFIX)
        ]
        if context:
            parts.append(" ".join(context))

        line = " | ".join(parts)
        color = _LEVEL_COLORS.get(record.levelno)
        if self.use_colors and color:
            line = f"{color}{line}{_RESET}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _console_handler(level: int, service_name: str, use_json: bool, use_colors: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if use_json:
        handler.setFormatter(JSONFormatter(service_name))
    else:
        handler.setFormatter(ColoredFormatter(use_colors and sys.stdout.isatty()))
    return handler


def _file_handler(path: str, level: int, service_name: str) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter(service_name))
    return handler


def setup_logging(
    level: str = "INFO",
    service_name: str = SERVICE_NAME,
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Replace the root handlers with docwatch's console (and optional file) output.

    Args:
        level: Level name; unknown names fall back to INFO
        service_name: Value of the ``service`` field in JSON output
        log_file: Optional path; file output is always JSON
        use_json: JSON on the console instead of the colored line format
        use_colors: Color console lines when stdout is a terminal
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handlers = [_console_handler(numeric_level, service_name, use_json, use_colors)]
    if log_file:
        handlers.append(_file_handler(log_file, numeric_level, service_name))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    for handler in handlers:
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_env() -> None:
    """Configure logging from ``DOCWATCH_LOG_LEVEL``, ``DOCWATCH_LOG_JSON`` and ``DOCWATCH_LOG_FILE``."""
    setup_logging(
        level=os.getenv("DOCWATCH_LOG_LEVEL", "INFO"),
        log_file=os.getenv("DOCWATCH_LOG_FILE") or None,
        use_json=os.getenv("DOCWATCH_LOG_JSON", "").lower() in ("1", "true", "yes"),
    )


class StructuredLogger:
    """Logger wrapper that attaches context fields to every record."""

    def __init__(self, name: str, **default_context):
        self.logger = logging.getLogger(name)
        self.default_context = default_context

    def bind(self, **context) -> 'StructuredLogger':
        """A child logger with additional default context."""
        return StructuredLogger(self.logger.name, **{**self.default_context, **context})

    def _extra(self, context: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(self.default_context)
        merged.update(context)
        return {f"{CONTEXT_PREFIX}{key}": value for key, value in merged.items()}

    def log(self, level: int, message: str, exc_info: bool = False, **context) -> None:
        self.logger.log(level, message, exc_info=exc_info, extra=self._extra(context))

    def debug(self, message: str, **context) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self.log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        self.log(logging.ERROR, message, exc_info=True, **context)


def get_structured_logger(name: str, **default_context) -> StructuredLogger:
    return StructuredLogger(name, **default_context)
