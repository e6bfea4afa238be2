# tests/unit/pipeline/test_unit_state.py — v1
"""Tests for pipeline/state.py: the run status machine."""

from __future__ import annotations

import pytest

from deploygate.core.errors import IllegalTransitionError
from deploygate.core.models import TERMINAL_STATUSES, PipelineRun, RunStatus
from deploygate.pipeline.state import TRANSITIONS, can_transition, transition


class TestTransitions:
    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(RunStatus)

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_have_no_exit(self, status):
        assert all(not can_transition(status, new) for new in RunStatus)

    def test_apply_only_after_approval(self):
        assert can_transition(RunStatus.APPROVED, RunStatus.APPLYING)
        assert not can_transition(RunStatus.RUNNING, RunStatus.APPLYING)
        assert not can_transition(RunStatus.AWAITING_APPROVAL, RunStatus.APPLYING)

    def test_no_cancel_once_approved(self):
        assert not can_transition(RunStatus.APPROVED, RunStatus.CANCELLED)
        assert not can_transition(RunStatus.APPLYING, RunStatus.CANCELLED)

    def test_rolled_back_unreachable(self):
        assert all(RunStatus.ROLLED_BACK not in exits for exits in TRANSITIONS.values())

    def test_transition_mutates_run(self):
        run = PipelineRun(run_id=1, target="prod", revision_id="r")
        before = run.updated_at
        transition(run, RunStatus.RUNNING)
        assert run.status == RunStatus.RUNNING
        assert run.updated_at >= before

    def test_illegal_transition_raises(self):
        run = PipelineRun(run_id=1, target="prod", revision_id="r", status=RunStatus.SUCCEEDED)
        with pytest.raises(IllegalTransitionError) as exc_info:
            transition(run, RunStatus.RUNNING)
        assert exc_info.value.details == {"from": "succeeded", "to": "running"}
        assert run.status == RunStatus.SUCCEEDED
