# src/core/authorizer.py — v1
"""Injectable authorization capability.

Consulted by the ApprovalGate (who may decide) and by the StateLock (which
run may mutate a target). Replaces a blanket administrative grant.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from deploygate.core.errors import AuthorizationError

logger = logging.getLogger(__name__)


class BaseAuthorizer(ABC):
    """Decides whether an actor may approve a run or lock a target."""

    @abstractmethod
    def can_approve(self, approver: str, target: str) -> bool:
        """True if ``approver`` may decide approvals for ``target``."""

    @abstractmethod
    def can_lock(self, run_id: int, target: str) -> bool:
        """True if run ``run_id`` may take the state lock of ``target``."""

    def require_approver(self, approver: str, target: str) -> None:
        if not self.can_approve(approver, target):
            raise AuthorizationError(
                f"'{approver}' may not approve deployments to '{target}'",
                {"approver": approver, "target": target},
            )

    def require_lock(self, run_id: int, target: str) -> None:
        if not self.can_lock(run_id, target):
            raise AuthorizationError(
                f"Run {run_id} may not lock '{target}'",
                {"run_id": run_id, "target": target},
            )


class AllowListAuthorizer(BaseAuthorizer):
    """Allow-list of approvers and lockable targets.

    Args:
        approvers: Identities allowed to approve. Empty means any non-empty
            identity may approve (logged once as an open policy).
        targets: Targets runs may lock. Empty means every target.
        approvers_by_target: Per-target approver lists, checked before
            ``approvers``.
    """

    def __init__(
        self,
        approvers: list[str] | None = None,
        targets: list[str] | None = None,
        approvers_by_target: dict[str, list[str]] | None = None,
    ) -> None:
        self._approvers = set(approvers or [])
        self._targets = set(targets or [])
        self._by_target = {t: set(a) for t, a in (approvers_by_target or {}).items()}
        if not self._approvers and not self._by_target:
            logger.warning("No approver allow-list configured: any identity may approve")

    def can_approve(self, approver: str, target: str) -> bool:
        if not approver.strip():
            return False
        if target in self._by_target:
            return approver in self._by_target[target]
        if not self._approvers:
            return True
        return approver in self._approvers

    def can_lock(self, run_id: int, target: str) -> bool:
        if not self._targets:
            return True
        return target in self._targets
