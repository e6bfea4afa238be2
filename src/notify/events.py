# src/notify/events.py — v1
"""Run-state-changed event published to subscribers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from deploygate.core.models import RunStatus, Stage, utcnow


class EventKind(str, Enum):
    STARTED = "started"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class RunEvent(BaseModel):
    """One notification. ``sequence`` increases per run; subscribers may see
    an event more than once and should dedupe on (run_id, sequence).

    ``run_id`` is None for ``rejected`` events, where no run was created.
    """

    model_config = ConfigDict(frozen=True)

    event: EventKind
    run_id: int | None
    target: str
    stage: Stage | None = None
    sequence: int = 0
    status: RunStatus | None = None
    reason: str = ""
    emitted_at: datetime = Field(default_factory=utcnow)
