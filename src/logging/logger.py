# src/logging/logger.py — v3
"""Logger factory with JSON and text formatters.

JSON lines carry the run context (run_id, target, stage) as top-level keys
so that one run's history can be pulled out of a shared log with a plain
filter. Values under secret-looking keys in ``extra={"data": ...}`` are
masked before they are written anywhere.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from deploygate.logging.context import get_context

_SECRET_KEY = re.compile(r"secret|password|passwd|token|credential|api_?key|private_?key", re.IGNORECASE)
REDACTED = "***"


def redact(data: Any) -> Any:
    """Mask values stored under secret-looking keys, recursively."""
    if isinstance(data, dict):
        return {
            key: REDACTED if isinstance(key, str) and _SECRET_KEY.search(key) else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data


class JsonFormatter(logging.Formatter):
    """One JSON object per line, run context flattened into the entry."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            **get_context().as_dict(),
            "message": record.getMessage(),
        }

        data = getattr(record, "data", None)
        if data:
            log_entry["data"] = redact(data)

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_context()
        parts = [
            datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            f"[{record.levelname:8s}]",
            record.name,
        ]
        if ctx.run_id:
            parts.append(f"[run {ctx.run_id}@{ctx.target}]")
        if ctx.stage:
            parts.append(f"({ctx.stage})")
        parts.append(f"- {record.getMessage()}")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def get_logger(name: str) -> logging.Logger:
    """Get a named logger. Configuration is applied by setup_logging()."""
    return logging.getLogger(f"deploygate.{name}")


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
    rotation: str = "10MB",
    retention: int = 30,
    run_log_dir: str | Path | None = None,
) -> None:
    """Configure the deploygate logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format ("json" or "text").
        log_file: Shared log file (None = stderr only).
        rotation: Max size of the shared file before rotation (e.g. "10MB").
        retention: Number of rotated files to keep.
        run_log_dir: Directory receiving one JSON log file per run.
    """
    root_logger = logging.getLogger("deploygate")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = TextFormatter()

    # CLI output goes to stdout; logs stay on stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file or run_log_dir:
        from deploygate.logging.handlers import RunLogHandler, create_rotating_handler

        if log_file:
            file_handler = create_rotating_handler(log_file, rotation=rotation, retention=retention)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        if run_log_dir:
            run_handler = RunLogHandler(run_log_dir)
            run_handler.setFormatter(JsonFormatter())
            root_logger.addHandler(run_handler)
