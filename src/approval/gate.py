# src/approval/gate.py — v1
"""ApprovalGate: human sign-off barrier between a Pass verdict and Apply.

Tokens are bound to one run, one revision and the exact verdict shown to
the approver. The gate is fail-closed: a token whose deadline passes without
a decision resolves to ``timed_out``, recorded separately from ``rejected``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from deploygate.core.authorizer import BaseAuthorizer
from deploygate.core.errors import ApprovalTimeout, ConflictError, ValidationError
from deploygate.core.models import (
    ApprovalDecision,
    ApprovalDecisionKind,
    ApprovalToken,
    ApprovalTokenStatus,
    PipelineRun,
    RunStatus,
    ScanVerdict,
    utcnow,
)
from deploygate.state.base_state_store import BaseStateStore

logger = logging.getLogger(__name__)

_HUMAN_DECISIONS = frozenset({ApprovalDecisionKind.APPROVED, ApprovalDecisionKind.REJECTED})


class ApprovalGate:
    """Issue, decide and await approval tokens.

    Args:
        store: State store persisting tokens and runs.
        authorizer: Optional check on who may decide for a target.
        clock: Injectable time source (tests).
        poll_interval_s: Store polling period in await_decision().
    """

    def __init__(
        self,
        store: BaseStateStore,
        authorizer: BaseAuthorizer | None = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval_s: float = 5.0,
    ) -> None:
        self._store = store
        self._authorizer = authorizer
        self._clock = clock
        self._poll_interval_s = poll_interval_s

    async def request_approval(
        self,
        run: PipelineRun,
        verdict: ScanVerdict,
        deadline: timedelta,
    ) -> ApprovalToken:
        """Open a token for ``run`` showing ``verdict``.

        Raises:
            ValidationError: If the verdict is not a Pass for the run's revision.
        """
        if not verdict.passed:
            raise ValidationError(
                "Approval can only be requested for a passing verdict",
                {"run_id": run.run_id, "outcome": verdict.outcome.value},
            )
        if verdict.revision_id != run.revision_id:
            raise ValidationError(
                "Verdict does not belong to the run's revision",
                {"run_id": run.run_id, "verdict_revision": verdict.revision_id},
            )

        now = self._clock()
        token = ApprovalToken(
            token=uuid.uuid4().hex,
            run_id=run.run_id,
            target=run.target,
            revision_id=run.revision_id,
            verdict=verdict,
            requested_at=now,
            deadline=now + deadline,
        )
        await self._store.save_token(token)
        logger.info(
            "Approval requested for run %d on %s (token %s, deadline %s)",
            run.run_id, run.target, token.token, token.deadline.isoformat(),
        )
        return token

    async def get_token(self, token_id: str) -> ApprovalToken:
        token = await self._store.get_token(token_id)
        if token is None:
            raise ConflictError(f"Unknown approval token {token_id}", {"token": token_id})
        return token

    async def decide(
        self,
        token_id: str,
        kind: ApprovalDecisionKind,
        approver: str,
        comment: str = "",
    ) -> ApprovalDecision:
        """Record a human decision on an open token.

        Raises:
            ConflictError: Token unknown, already closed, or its run has moved
                to another revision.
            ApprovalTimeout: The deadline has passed.
            AuthorizationError: The approver may not decide for this target.
            ValidationError: ``kind`` is not approved/rejected.
        """
        if kind not in _HUMAN_DECISIONS:
            raise ValidationError(f"'{kind.value}' cannot be submitted by an approver")

        token = await self.get_token(token_id)
        if not token.is_open:
            raise ConflictError(
                f"Approval token {token_id} is {token.status.value}",
                {"token": token_id, "status": token.status.value},
            )

        now = self._clock()
        if token.is_overdue(now):
            await self._expire(token, now)
            raise ApprovalTimeout(
                f"Approval token {token_id} expired at {token.deadline.isoformat()}",
                {"token": token_id, "run_id": token.run_id},
            )

        run = await self._store.get_run(token.run_id)
        if (
            run is None
            or run.status != RunStatus.AWAITING_APPROVAL
            or run.revision_id != token.revision_id
        ):
            await self.invalidate(token_id)
            raise ConflictError(
                f"Run {token.run_id} is no longer awaiting approval of {token.revision_id}",
                {"token": token_id, "run_id": token.run_id},
            )

        if self._authorizer is not None:
            self._authorizer.require_approver(approver, token.target)
        elif not approver.strip():
            raise ValidationError("Approver identity is required")

        decision = ApprovalDecision(
            kind=kind,
            approver=approver,
            run_id=token.run_id,
            revision_id=token.revision_id,
            verdict_digest=token.verdict.digest,
            decided_at=now,
            comment=comment,
        )
        token.status = ApprovalTokenStatus.DECIDED
        token.decision = decision
        if not await self._store.compare_and_set_token(token, ApprovalTokenStatus.OPEN):
            current = await self.get_token(token_id)
            raise ConflictError(
                f"Approval token {token_id} was closed concurrently ({current.status.value})",
                {"token": token_id, "status": current.status.value},
            )
        logger.info("Run %d %s by %s", token.run_id, kind.value, approver)
        return decision

    async def invalidate(self, token_id: str) -> None:
        """Close an open token without a decision (revision change, cancel)."""
        token = await self.get_token(token_id)
        if not token.is_open:
            return
        token.status = ApprovalTokenStatus.INVALIDATED
        if not await self._store.compare_and_set_token(token, ApprovalTokenStatus.OPEN):
            logger.debug("Approval token %s closed before it could be invalidated", token_id)
            return
        logger.info("Approval token %s for run %d invalidated", token_id, token.run_id)

    async def await_decision(self, token_id: str) -> ApprovalDecision:
        """Block until the token is decided or its deadline passes.

        Raises:
            ConflictError: If the token is invalidated while waiting.
        """
        while True:
            token = await self.get_token(token_id)
            if token.decision is not None:
                return token.decision
            if token.status == ApprovalTokenStatus.INVALIDATED:
                raise ConflictError(
                    f"Approval token {token_id} was invalidated",
                    {"token": token_id, "run_id": token.run_id},
                )

            now = self._clock()
            if token.is_overdue(now):
                decision = await self._expire(token, now)
                if decision is not None:
                    return decision
                continue

            remaining = (token.deadline - now).total_seconds()
            await asyncio.sleep(max(0.0, min(self._poll_interval_s, remaining)))

    async def expire_overdue(self) -> list[ApprovalToken]:
        """Resolve every open token past its deadline to ``timed_out``."""
        now = self._clock()
        expired = []
        for token in await self._store.list_tokens(ApprovalTokenStatus.OPEN):
            if token.is_overdue(now) and await self._expire(token, now) is not None:
                expired.append(token)
        return expired

    async def _expire(self, token: ApprovalToken, now: datetime) -> ApprovalDecision | None:
        """Close an open token as timed out; None if another writer closed it first."""
        decision = ApprovalDecision(
            kind=ApprovalDecisionKind.TIMED_OUT,
            approver="",
            run_id=token.run_id,
            revision_id=token.revision_id,
            verdict_digest=token.verdict.digest,
            decided_at=now,
        )
        token.status = ApprovalTokenStatus.EXPIRED
        token.decision = decision
        if not await self._store.compare_and_set_token(token, ApprovalTokenStatus.OPEN):
            return None
        logger.warning(
            "Approval for run %d timed out (deadline %s)", token.run_id, token.deadline.isoformat()
        )
        return decision
