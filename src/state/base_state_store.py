# src/state/base_state_store.py — v1
"""Abstract persistence for runs, deployment states, approvals and locks.

Runs are keyed by (target, run_id), deployment states by (target, version).
Lock and state-version operations are compare-and-set so that several
controller processes can share one store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from deploygate.core.models import (
    ApprovalToken,
    ApprovalTokenStatus,
    DeploymentState,
    LockHandle,
    PipelineRun,
)


class BaseStateStore(ABC):
    """Unified interface for state storage backends."""

    # --- Runs ---

    @abstractmethod
    async def next_run_id(self) -> int:
        """Allocate a unique, monotonically increasing run id."""

    @abstractmethod
    async def save_run(self, run: PipelineRun) -> None:
        """Insert or replace a run record."""

    @abstractmethod
    async def get_run(self, run_id: int) -> PipelineRun | None:
        """Retrieve a run by id."""

    @abstractmethod
    async def list_runs(self, target: str | None = None) -> list[PipelineRun]:
        """List runs ordered by run id, optionally for one target."""

    async def active_runs(self, target: str) -> list[PipelineRun]:
        """Non-terminal runs for a target."""
        return [r for r in await self.list_runs(target) if not r.is_terminal]

    # --- Deployment state ---

    @abstractmethod
    async def get_state(self, target: str) -> DeploymentState:
        """Current deployment state (version 0 if nothing was applied)."""

    @abstractmethod
    async def compare_and_set_state(
        self, state: DeploymentState, expected_version: int
    ) -> bool:
        """Record ``state`` only if the current version equals expected_version.

        ``state.version`` must be ``expected_version + 1``.
        """

    @abstractmethod
    async def state_history(self, target: str) -> list[DeploymentState]:
        """All recorded versions for a target, oldest first."""

    # --- Approval tokens ---

    @abstractmethod
    async def save_token(self, token: ApprovalToken) -> None:
        """Insert or replace an approval token."""

    @abstractmethod
    async def compare_and_set_token(
        self, token: ApprovalToken, expected_status: ApprovalTokenStatus
    ) -> bool:
        """Replace a stored token only if its status is still ``expected_status``.

        Returns False, without writing, if the token is missing or another
        writer already moved it on.
        """

    @abstractmethod
    async def get_token(self, token_id: str) -> ApprovalToken | None:
        """Retrieve an approval token."""

    @abstractmethod
    async def list_tokens(
        self, status: ApprovalTokenStatus | None = None
    ) -> list[ApprovalToken]:
        """List approval tokens, optionally filtered by status."""

    # --- Locks ---

    @abstractmethod
    async def try_acquire_lock(
        self,
        target: str,
        run_id: int,
        now: datetime,
        lease_expires_at: datetime,
    ) -> LockHandle | None:
        """Atomically take the lock unless a live (unexpired) lease exists.

        Returns the new handle with a fencing token strictly greater than any
        previously issued for the target, or None when the lock is held.
        """

    @abstractmethod
    async def get_lock(self, target: str) -> LockHandle | None:
        """Current lock entry for a target, expired or not."""

    @abstractmethod
    async def update_lock(self, handle: LockHandle) -> bool:
        """Replace the entry if it still carries handle.fencing_token."""

    @abstractmethod
    async def delete_lock(self, handle: LockHandle) -> bool:
        """Delete the entry if it still carries handle.fencing_token."""

    @abstractmethod
    async def delete_expired_locks(self, now: datetime) -> list[LockHandle]:
        """Remove lapsed leases and return them."""

    def close(self) -> None:
        """Release backend resources."""
