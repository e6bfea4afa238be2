# src/scan/aggregator.py — v1
"""ScanAggregator: run checkers concurrently and fold them into one verdict.

Policy:
  - Pass requires every checker to Pass; any Fail, Error or Skipped fails.
  - An empty checker list fails (nothing vouched for the revision).
  - A checker that raises is an Error; one that overruns its timeout is an
    Error with reason ``Timeout``. Neither is ever ignored.
  - Findings are kept in checker registration order, then by descending
    severity within a checker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from deploygate.core.models import (
    CheckResult,
    Finding,
    Revision,
    ScanVerdict,
    Severity,
    StageOutcome,
)
from deploygate.scan.base_checker import BaseChecker

logger = logging.getLogger(__name__)

DEFAULT_CHECKER_TIMEOUT_S = 300.0


class ScanAggregator:
    """Evaluate a revision against a set of independent checkers.

    Args:
        default_timeout_s: Timeout for checkers that do not declare one.
    """

    def __init__(self, default_timeout_s: float = DEFAULT_CHECKER_TIMEOUT_S) -> None:
        self._default_timeout_s = default_timeout_s

    async def evaluate(
        self, revision: Revision, checkers: Sequence[BaseChecker]
    ) -> ScanVerdict:
        """Run all checkers against the same snapshot and aggregate."""
        if not checkers:
            logger.warning("No checkers configured for %s: failing closed", revision.revision_id)
            return ScanVerdict(
                revision_id=revision.revision_id,
                outcome=StageOutcome.FAIL,
                findings=[
                    Finding(
                        checker="scan",
                        severity=Severity.HIGH,
                        message="No checkers configured",
                    )
                ],
            )

        results = await asyncio.gather(
            *(self._run_checker(checker, revision) for checker in checkers)
        )

        passed = all(r.outcome == StageOutcome.PASS for r in results)
        findings: list[Finding] = []
        for result in results:
            findings.extend(sorted(result.findings, key=lambda f: -f.severity.rank))

        verdict = ScanVerdict(
            revision_id=revision.revision_id,
            outcome=StageOutcome.PASS if passed else StageOutcome.FAIL,
            checks=list(results),
            findings=findings,
        )
        logger.info(
            "Scan verdict for %s: %s (%d checkers, %d findings)",
            revision.revision_id,
            verdict.outcome.value,
            len(results),
            len(findings),
        )
        return verdict

    async def _run_checker(self, checker: BaseChecker, revision: Revision) -> CheckResult:
        timeout = checker.timeout_s or self._default_timeout_s
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(checker.check(revision), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Checker %s timed out after %.1fs", checker.name, timeout)
            return CheckResult(
                checker=checker.name,
                outcome=StageOutcome.ERROR,
                reason="Timeout",
                findings=[
                    Finding(
                        checker=checker.name,
                        severity=Severity.HIGH,
                        message=f"Checker timed out after {timeout:g}s",
                    )
                ],
                duration_ms=_elapsed_ms(start),
            )
        except Exception as exc:
            logger.exception("Checker %s raised", checker.name)
            return CheckResult(
                checker=checker.name,
                outcome=StageOutcome.ERROR,
                reason=f"{type(exc).__name__}: {exc}",
                findings=[
                    Finding(
                        checker=checker.name,
                        severity=Severity.HIGH,
                        message=f"Checker could not execute: {exc}",
                    )
                ],
                duration_ms=_elapsed_ms(start),
            )

        return result.model_copy(
            update={"checker": checker.name, "duration_ms": _elapsed_ms(start)}
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
