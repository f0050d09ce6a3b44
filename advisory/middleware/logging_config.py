"""
Structured logging configuration.

Production writes one JSON object per line; development and testing use a
short colored format. ``LOG_LEVEL`` overrides the level.

Engagement code logs with ``extra={"project_id": ..., "module_id": ..., "phase": ...}``
so one project's run can be filtered out of the aggregated stream.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes that become top-level JSON keys when set
CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "project_id",
    "client_id",
    "module_id",
    "phase",
    "provider",
    "model",
)

_QUIET_LOGGERS = ("werkzeug", "urllib3", "httpx", "sqlalchemy.engine", "anthropic", "openai", "google_genai")


def _has_exception(record: logging.LogRecord) -> bool:
    return bool(record.exc_info) and record.exc_info[0] is not None


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "thread": record.threadName,
        }
        entry.update(
            (key, getattr(record, key)) for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        )
        if _has_exception(record):
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger <project>: message [Nms]`` with level colors."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        parts = [f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}"]

        project_id = getattr(record, "project_id", None)
        if isinstance(project_id, str) and project_id:
            parts.append(f" <{project_id[:8]}>")
        parts.append(f": {record.getMessage()}")

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f" [{duration:.0f}ms]")

        line = "".join(parts)
        if _has_exception(record):
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    JSON when the app is neither in DEBUG nor TESTING, readable otherwise.
    Safe to call once per ``create_app()``: existing root handlers are replaced.
    """
    testing = app.config.get("TESTING", False)
    json_output = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if json_output else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if json_output else "readable")
