"""
Structured logging utilities for dbagent.

One configuration serves three kinds of process: the CLI, the orchestrator, and each
worker. Workers must never write log lines to stdout (it carries protocol frames), so
every handler here targets stderr unless told otherwise. The orchestrator reads each
worker's stderr and re-logs the lines through `relay_worker_line`, tagged with the
worker pid.

Usage:
    from dbagent.utils.logging import configure_logging, get_logger

    configure_logging(level="DEBUG", json_logs=True)
    log = get_logger(__name__)
    log.info("[DISPATCH] users", extra={"route": "on_row"})
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
from typing import IO, Any, Dict, Optional

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(process)d | %(name)s | %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "extra"}


def _json_formatter(record: logging.LogRecord) -> str:
    """Render a log record as JSON string."""
    payload: Dict[str, Any] = {
        "level": record.levelname,
        "logger": record.name,
        "pid": record.process,
        "message": record.getMessage(),
    }
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    if record.stack_info:
        payload["stack_info"] = record.stack_info
    payload.update(
        (key, value)
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    )
    legacy = getattr(record, "extra", None)
    if isinstance(legacy, dict):
        payload.update(legacy)
    return json.dumps(payload, default=repr)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with `extra=` fields promoted to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


def _dict_config(level: str, formatter: str, stream: IO[str]) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": CONSOLE_FORMAT, "datefmt": CONSOLE_DATEFMT},
            "json": {"()": JsonFormatter},
        },
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "level": level,
                "stream": stream,
            }
        },
        "root": {"handlers": ["stderr"], "level": level},
    }


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    stream: Optional[IO[str]] = None,
) -> None:
    """
    Configure root logging.

    Parameters
    ----------
    level : str
        Logging level name (e.g., "DEBUG", "INFO", "WARNING").
    json_logs : bool
        Whether to emit logs as JSON. If False, uses a concise human formatter.
    stream : IO[str] | None
        Destination stream, stderr by default.
    """
    formatter = "json" if json_logs else "console"
    logging.config.dictConfig(_dict_config(level, formatter, stream or sys.stderr))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger with the given name. If name is None, returns the root logger.
    """
    return logging.getLogger(name)


def worker_line_level(text: str) -> int:
    """
    Level a worker logged ``text`` at, read from the console or JSON format.

    Lines carrying no recognizable level (tracebacks, stray prints) count as WARNING.
    """
    name: Any = None
    if text.startswith("{"):
        try:
            name = json.loads(text).get("level")
        except (ValueError, AttributeError):
            name = None
    else:
        fields = text.split(" | ", 2)
        if len(fields) > 1:
            name = fields[1]
    level = logging.getLevelName(name) if isinstance(name, str) else None
    return level if isinstance(level, int) else logging.WARNING


def relay_worker_line(logger: logging.Logger, pid: int, line: bytes) -> None:
    """
    Re-log one line a worker wrote to its stderr at the worker's own level.

    Blank lines are dropped.
    """
    text = line.decode("utf-8", errors="replace").rstrip()
    if text:
        logger.log(worker_line_level(text), f"[WORKER {pid}] {text}", extra={"worker_pid": pid})


__all__ = [
    "configure_logging",
    "get_logger",
    "JsonFormatter",
    "relay_worker_line",
    "worker_line_level",
]
