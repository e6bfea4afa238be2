# tests/unit/approval/test_gate.py — v1
"""Tests for approval/gate.py: tokens, decisions, deadlines."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from deploygate.approval.gate import ApprovalGate
from deploygate.core.authorizer import AllowListAuthorizer
from deploygate.core.errors import (
    ApprovalTimeout,
    AuthorizationError,
    ConflictError,
    ValidationError,
)
from deploygate.core.models import (
    ApprovalDecisionKind,
    ApprovalTokenStatus,
    PipelineRun,
    RunStatus,
    ScanVerdict,
    StageOutcome,
    utcnow,
)

DEADLINE = timedelta(hours=1)


class FakeClock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(store, clock):
    return ApprovalGate(store, clock=clock, poll_interval_s=0.01)


@pytest.fixture
def verdict(revision):
    return ScanVerdict(revision_id=revision.revision_id, outcome=StageOutcome.PASS)


@pytest_asyncio.fixture
async def awaiting_run(store, revision):
    run = PipelineRun(
        run_id=await store.next_run_id(),
        target=revision.target,
        revision_id=revision.revision_id,
        status=RunStatus.AWAITING_APPROVAL,
    )
    await store.save_run(run)
    return run


class TestRequestApproval:
    @pytest.mark.asyncio
    async def test_token_bound_to_run_and_verdict(self, gate, awaiting_run, verdict, clock):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        assert token.run_id == awaiting_run.run_id
        assert token.revision_id == awaiting_run.revision_id
        assert token.verdict == verdict
        assert token.deadline == clock.now + DEADLINE
        assert token.is_open

    @pytest.mark.asyncio
    async def test_failing_verdict_refused(self, gate, awaiting_run, revision):
        failed = ScanVerdict(revision_id=revision.revision_id, outcome=StageOutcome.FAIL)
        with pytest.raises(ValidationError):
            await gate.request_approval(awaiting_run, failed, DEADLINE)

    @pytest.mark.asyncio
    async def test_foreign_verdict_refused(self, gate, awaiting_run):
        other = ScanVerdict(revision_id="sha256:other", outcome=StageOutcome.PASS)
        with pytest.raises(ValidationError):
            await gate.request_approval(awaiting_run, other, DEADLINE)

    @pytest.mark.asyncio
    async def test_unknown_token(self, gate):
        with pytest.raises(ConflictError):
            await gate.get_token("nope")


class TestDecide:
    @pytest.mark.asyncio
    async def test_approve(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        decision = await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice", "lgtm")
        assert decision.kind == ApprovalDecisionKind.APPROVED
        assert decision.verdict_digest == verdict.digest
        assert decision.comment == "lgtm"
        stored = await gate.get_token(token.token)
        assert stored.status == ApprovalTokenStatus.DECIDED
        assert stored.decision == decision

    @pytest.mark.asyncio
    async def test_second_decision_conflicts(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        await gate.decide(token.token, ApprovalDecisionKind.REJECTED, "alice")
        with pytest.raises(ConflictError):
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "bob")

    @pytest.mark.asyncio
    async def test_timed_out_not_submittable(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        with pytest.raises(ValidationError):
            await gate.decide(token.token, ApprovalDecisionKind.TIMED_OUT, "alice")

    @pytest.mark.asyncio
    async def test_overdue_decision_times_out(self, gate, awaiting_run, verdict, clock):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        clock.advance(hours=2)
        with pytest.raises(ApprovalTimeout):
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice")
        stored = await gate.get_token(token.token)
        assert stored.status == ApprovalTokenStatus.EXPIRED
        assert stored.decision.kind == ApprovalDecisionKind.TIMED_OUT

    @pytest.mark.asyncio
    async def test_run_moved_on_invalidates(self, gate, store, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        awaiting_run.status = RunStatus.CANCELLED
        await store.save_run(awaiting_run)
        with pytest.raises(ConflictError):
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice")
        assert (await gate.get_token(token.token)).status == ApprovalTokenStatus.INVALIDATED

    @pytest.mark.asyncio
    async def test_empty_approver_refused(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        with pytest.raises(ValidationError):
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "  ")

    @pytest.mark.asyncio
    async def test_authorizer_enforced(self, store, awaiting_run, verdict):
        gate = ApprovalGate(store, authorizer=AllowListAuthorizer(approvers=["alice"]))
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        with pytest.raises(AuthorizationError):
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "mallory")
        assert (await gate.get_token(token.token)).is_open
        decision = await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice")
        assert decision.approver == "alice"


class TestAwaitDecision:
    @pytest.mark.asyncio
    async def test_returns_decision_made_while_waiting(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)

        async def approve_later():
            await asyncio.sleep(0.05)
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice")

        decision, _ = await asyncio.gather(gate.await_decision(token.token), approve_later())
        assert decision.kind == ApprovalDecisionKind.APPROVED

    @pytest.mark.asyncio
    async def test_deadline_resolves_to_timed_out(self, store, awaiting_run, verdict):
        gate = ApprovalGate(store, poll_interval_s=0.01)
        token = await gate.request_approval(awaiting_run, verdict, timedelta(milliseconds=50))
        decision = await gate.await_decision(token.token)
        assert decision.kind == ApprovalDecisionKind.TIMED_OUT
        assert decision.approver == ""

    @pytest.mark.asyncio
    async def test_invalidated_raises(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        await gate.invalidate(token.token)
        with pytest.raises(ConflictError):
            await gate.await_decision(token.token)

    @pytest.mark.asyncio
    async def test_invalidate_closed_token_is_noop(self, gate, awaiting_run, verdict):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        await gate.decide(token.token, ApprovalDecisionKind.REJECTED, "alice")
        await gate.invalidate(token.token)
        assert (await gate.get_token(token.token)).status == ApprovalTokenStatus.DECIDED


class TestExpireOverdue:
    @pytest.mark.asyncio
    async def test_only_overdue_tokens_expire(self, gate, store, awaiting_run, verdict, clock):
        old = await gate.request_approval(awaiting_run, verdict, timedelta(minutes=10))
        fresh = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        clock.advance(minutes=30)
        expired = await gate.expire_overdue()
        assert [t.token for t in expired] == [old.token]
        assert (await gate.get_token(fresh.token)).is_open


class TestConcurrentClose:
    @pytest.mark.asyncio
    async def test_decision_loses_to_expiry(self, gate, store, awaiting_run, verdict, monkeypatch):
        token = await gate.request_approval(awaiting_run, verdict, DEADLINE)
        late_clock = FakeClock()
        late_clock.advance(hours=2)
        poller = ApprovalGate(store, clock=late_clock)
        real_get_run = store.get_run

        async def expire_then_get_run(run_id):
            await poller.expire_overdue()
            return await real_get_run(run_id)

        monkeypatch.setattr(store, "get_run", expire_then_get_run)
        with pytest.raises(ConflictError):
            await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice")

        stored = await gate.get_token(token.token)
        assert stored.status == ApprovalTokenStatus.EXPIRED
        assert stored.decision.kind == ApprovalDecisionKind.TIMED_OUT

    @pytest.mark.asyncio
    async def test_expiry_loses_to_decision(self, gate, store, awaiting_run, verdict, clock, monkeypatch):
        token = await gate.request_approval(awaiting_run, verdict, timedelta(minutes=10))
        stale = await store.get_token(token.token)
        await gate.decide(token.token, ApprovalDecisionKind.APPROVED, "alice")

        async def stale_open_tokens(status=None):
            return [stale]

        monkeypatch.setattr(store, "list_tokens", stale_open_tokens)
        clock.advance(minutes=30)
        assert await gate.expire_overdue() == []

        stored = await gate.get_token(token.token)
        assert stored.status == ApprovalTokenStatus.DECIDED
        assert stored.decision.kind == ApprovalDecisionKind.APPROVED
