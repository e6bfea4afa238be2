# src/scan/base_checker.py — v1
"""Standard checker interface consumed by the ScanAggregator."""

from __future__ import annotations

from abc import ABC, abstractmethod

from deploygate.core.models import CheckResult, Finding, Revision, StageOutcome


class BaseChecker(ABC):
    """A compliance or security evaluator over an immutable revision snapshot.

    Implementations must not mutate the snapshot or share mutable state with
    other checkers: the aggregator runs them concurrently.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique checker identifier (e.g. 'tfsec', 'no-public-buckets')."""

    @property
    def timeout_s(self) -> float | None:
        """Per-checker timeout. None uses the aggregator default."""
        return None

    @abstractmethod
    async def check(self, snapshot: Revision) -> CheckResult:
        """Evaluate the snapshot and return an outcome with findings."""

    def result(
        self,
        outcome: StageOutcome,
        findings: list[Finding] | None = None,
        reason: str = "",
    ) -> CheckResult:
        """Build a CheckResult attributed to this checker."""
        return CheckResult(
            checker=self.name,
            outcome=outcome,
            findings=findings or [],
            reason=reason,
        )
