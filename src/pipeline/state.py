# src/pipeline/state.py — v1
"""Run status state machine.

    pending -> running (source, validate, scan)
    running -> awaiting_approval | failed | cancelled
    awaiting_approval -> approved | failed | cancelled
    approved -> applying | failed
    applying -> succeeded | failed

Terminal statuses have no exits. ``running -> running`` is the only
self-transition and moves the stage cursor forward.
"""

from __future__ import annotations

from deploygate.core.errors import IllegalTransitionError
from deploygate.core.models import PipelineRun, RunStatus, utcnow

TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.AWAITING_APPROVAL: frozenset(
        {RunStatus.APPROVED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.APPROVED: frozenset({RunStatus.APPLYING, RunStatus.FAILED}),
    RunStatus.APPLYING: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
    RunStatus.ROLLED_BACK: frozenset(),
}


def can_transition(current: RunStatus, new: RunStatus) -> bool:
    return new in TRANSITIONS[current]


def assert_transition(current: RunStatus, new: RunStatus) -> None:
    """Raise IllegalTransitionError unless current -> new is allowed."""
    if not can_transition(current, new):
        raise IllegalTransitionError(
            f"Illegal run transition {current.value} -> {new.value}",
            {"from": current.value, "to": new.value},
        )


def transition(run: PipelineRun, new: RunStatus) -> PipelineRun:
    """Move ``run`` to ``new`` in place."""
    assert_transition(run.status, new)
    run.status = new
    run.updated_at = utcnow()
    return run
