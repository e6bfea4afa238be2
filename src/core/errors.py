# src/core/errors.py — v1
"""Error taxonomy shared by every pipeline component.

Recoverable contention (ConflictError) is separated from policy rejection
(ValidationError, ScanFailure), tool faults (ExecutionError), fail-closed
approval expiry (ApprovalTimeout) and apply failures (ApplyError).
"""

from __future__ import annotations

from typing import Any


class DeployGateError(Exception):
    """Base class for all deploygate errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | details: {self.details}"
        return self.message


class ConflictError(DeployGateError):
    """Lock or concurrent-run contention. Callers may retry or queue."""


class ValidationError(DeployGateError):
    """Policy rejection raised by the Validate stage. Terminal for the run."""


class ScanFailure(DeployGateError):
    """Aggregated scan verdict was Fail. Terminal for the run."""

    def __init__(self, message: str, findings: list[Any] | None = None) -> None:
        super().__init__(message, {"findings": len(findings or [])})
        self.findings = list(findings or [])


class ExecutionError(DeployGateError):
    """Tool crashed, timed out or the environment faulted.

    Retried by the pipeline unless ``retryable`` is False: a fault rooted in
    the input itself fails the same way on every attempt.
    """

    def __init__(
        self,
        message: str,
        reason: str = "",
        log_ref: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, details)
        self.reason = reason
        self.log_ref = log_ref
        self.retryable = retryable


class ApprovalTimeout(DeployGateError):
    """Approval deadline elapsed without a decision (fail-closed)."""


class ApplyError(DeployGateError):
    """Apply failed. DeploymentState stays at its last-known-good version."""


class StaleStateError(ApplyError):
    """Deployment state moved since the run observed it before approval."""

    def __init__(self, target: str, expected: int, actual: int) -> None:
        super().__init__(
            f"State of '{target}' is at version {actual}, expected {expected}",
            {"target": target, "expected": expected, "actual": actual},
        )
        self.target = target
        self.expected = expected
        self.actual = actual


class IntegrityError(DeployGateError):
    """Stored blob does not hash to its content address."""


class IllegalTransitionError(DeployGateError):
    """Requested run status transition is not permitted."""


class AuthorizationError(DeployGateError):
    """Actor is not allowed to approve or to take the state lock."""
