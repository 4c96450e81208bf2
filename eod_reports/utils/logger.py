"""
Centralized logging configuration.

Every logger lives under the ``eod_reports`` namespace. Keyword arguments given
to a :class:`StructuredLogger` call travel on the record as ``extra_data`` and
are rendered as ``key=value`` on the console and as top-level keys in the JSON
file output. Two dedicated channels exist: ``eod_reports.audit`` for task and
main-task lifecycle events, ``eod_reports.performance`` for job timings.
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "eod_reports"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per line; structured context is merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_data", None) or {})
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Console formatter appending structured context as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra_data = getattr(record, "extra_data", None)
        if not extra_data:
            return base
        context = " ".join(f"{k}={v}" for k, v in extra_data.items())
        return f"{base} | {context}"


class StructuredLogger:
    """
    Thin wrapper whose methods accept context as keyword arguments.

    ``None`` values are dropped; ``exc_info`` is forwarded to the underlying
    logger instead of being serialized.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, **context: Any) -> None:
        exc_info = context.pop("exc_info", None)
        extra_data = {k: v for k, v in context.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def debug(self, message: str, **context: Any) -> None:
        self._emit(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._emit(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._emit(logging.ERROR, message, **context)


def build_logging_config(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Translate ``LOGGING_SETTINGS`` into a ``dictConfig`` mapping."""
    level = settings.get("level", "INFO")
    handlers: Dict[str, Dict[str, Any]] = {}
    if settings.get("console", True):
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "console",
            "level": level,
        }
    log_file = settings.get("file")
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": settings.get("file_max_bytes", 10 * 1024 * 1024),
            "backupCount": settings.get("file_backups", 5),
            "formatter": "json",
            "level": level,
        }
    names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        ROOT_LOGGER_NAME: {"level": level, "handlers": names, "propagate": False},
    }
    for lib, lib_level in settings.get("library_levels", {}).items():
        loggers[lib] = {"level": lib_level, "handlers": names, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {"()": ContextFormatter, "format": CONSOLE_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": level, "handlers": names},
    }


def setup_logging(settings: Optional[Dict[str, Any]] = None) -> None:
    """Apply logging configuration; defaults to ``config.LOGGING_SETTINGS``."""
    if settings is None:
        from eod_reports.config import LOGGING_SETTINGS
        settings = LOGGING_SETTINGS
    if settings.get("file"):
        Path(settings["file"]).parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config(settings))


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger nested under the package namespace."""
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    task_reference: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    """
    Record a lifecycle event on the audit channel.

    Args:
        event_type: e.g. ``fan_out_completed``, ``task_completed``, ``task_dead_lettered``
        details: event-specific fields, merged into the structured context
        task_reference: set when the event concerns a single task
        request_id: set when the event originates from an API request
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        task_reference=task_reference,
        request_id=request_id,
        **details,
    )


def log_performance(operation: str, duration_ms: float, additional_data: Optional[Dict[str, Any]] = None) -> None:
    data: Dict[str, Any] = {"duration_ms": round(duration_ms, 2)}
    if additional_data:
        data.update(additional_data)
    get_logger("performance").info(f"Performance: {operation}", operation=operation, **data)
