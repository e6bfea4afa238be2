# src/logging/handlers.py — v3
"""File handlers: the size-rotated shared log and per-run log files."""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from deploygate.logging.context import get_context

_UNITS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def parse_size(size_str: str) -> int:
    """Parse a size such as '10MB', '512KB' or '2048B' into bytes."""
    match = re.fullmatch(r"(\d+)\s*(B|KB|MB|GB)", size_str.strip(), re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size format: {size_str!r}. Use e.g. '10MB'.")
    return int(match.group(1)) * _UNITS[match.group(2).upper()]


def create_rotating_handler(
    log_file: str | Path,
    rotation: str = "10MB",
    retention: int = 30,
) -> RotatingFileHandler:
    """Create a rotating file handler, creating parent directories as needed.

    Args:
        log_file: Path to log file (``~`` is expanded).
        rotation: Max file size before rotation.
        retention: Number of rotated files to keep.
    """
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        filename=str(path),
        maxBytes=parse_size(rotation),
        backupCount=retention,
        encoding="utf-8",
    )


class RunLogHandler(logging.Handler):
    """Append each record emitted inside a run context to that run's file.

    Files live at ``<directory>/<target>/run-<run_id>.log``. Records logged
    outside a run are ignored. Several controller processes may drive the
    same run (``trigger --detach`` then ``resume``), so the file is opened in
    append mode for every record instead of being held open.
    """

    def __init__(self, directory: str | Path, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.directory = Path(directory).expanduser()

    def path_for(self, run_id: str, target: str | None) -> Path:
        folder = _UNSAFE_NAME.sub("_", target or "")
        if folder in ("", ".", ".."):
            folder = "_"
        return self.directory / folder / f"run-{_UNSAFE_NAME.sub('_', run_id)}.log"

    def emit(self, record: logging.LogRecord) -> None:
        ctx = get_context()
        if not ctx.run_id:
            return
        try:
            line = self.format(record)
            path = self.path_for(ctx.run_id, ctx.target)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except Exception:
            self.handleError(record)
