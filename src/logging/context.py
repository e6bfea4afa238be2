# src/logging/context.py — v2
"""Contextual logging support: attach run_id, target and stage to log records."""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

# Context variables for structured logging, set per run execution.
_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)
_target: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "target", default=None
)
_stage: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "stage", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    run_id: str | None = None
    target: str | None = None
    stage: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        run_id=_run_id.get(),
        target=_target.get(),
        stage=_stage.get(),
    )


def set_run_context(run_id: int | str, target: str) -> None:
    """Set run-level context (called when the controller picks up a run)."""
    _run_id.set(str(run_id))
    _target.set(target)


def set_stage_context(stage: str | None) -> None:
    """Set stage-level context (called per stage execution)."""
    _stage.set(stage)


@contextmanager
def run_context(run_id: int | str, target: str, stage: str | None = None) -> Iterator[None]:
    """Scope run/stage context to a block and restore the previous values."""
    tokens = (
        _run_id.set(str(run_id)),
        _target.set(target),
        _stage.set(stage),
    )
    try:
        yield
    finally:
        _stage.reset(tokens[2])
        _target.reset(tokens[1])
        _run_id.reset(tokens[0])


def clear_context() -> None:
    """Reset all context variables."""
    _run_id.set(None)
    _target.set(None)
    _stage.set(None)
