# tests/unit/scan/test_aggregator.py — v1
"""Tests for scan/aggregator.py: unanimous-pass aggregation."""

from __future__ import annotations

import time

import pytest

from deploygate.core.models import Finding, Severity, StageOutcome
from deploygate.scan.aggregator import ScanAggregator
from tests.conftest import StubChecker


@pytest.fixture
def aggregator():
    return ScanAggregator(default_timeout_s=2.0)


class TestVerdict:
    @pytest.mark.asyncio
    async def test_all_pass(self, aggregator, revision):
        verdict = await aggregator.evaluate(revision, [StubChecker("a"), StubChecker("b")])
        assert verdict.passed
        assert verdict.revision_id == revision.revision_id
        assert [c.checker for c in verdict.checks] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_single_fail_fails(self, aggregator, revision, public_bucket_finding):
        verdict = await aggregator.evaluate(
            revision,
            [StubChecker("a"), StubChecker("tfsec", StageOutcome.FAIL, [public_bucket_finding])],
        )
        assert verdict.outcome == StageOutcome.FAIL
        assert verdict.findings == [public_bucket_finding]

    @pytest.mark.asyncio
    async def test_empty_checker_list_fails_closed(self, aggregator, revision):
        verdict = await aggregator.evaluate(revision, [])
        assert not verdict.passed
        assert verdict.findings[0].message == "No checkers configured"

    @pytest.mark.asyncio
    async def test_raising_checker_is_error(self, aggregator, revision):
        verdict = await aggregator.evaluate(
            revision, [StubChecker("a"), StubChecker("boom", error=RuntimeError("scanner crashed"))]
        )
        assert not verdict.passed
        errored = verdict.checks[1]
        assert errored.outcome == StageOutcome.ERROR
        assert "scanner crashed" in errored.reason

    @pytest.mark.asyncio
    async def test_timeout_is_error(self, revision):
        aggregator = ScanAggregator(default_timeout_s=0.05)
        verdict = await aggregator.evaluate(revision, [StubChecker("slow", delay_s=5)])
        assert not verdict.passed
        assert verdict.checks[0].outcome == StageOutcome.ERROR
        assert verdict.checks[0].reason == "Timeout"

    @pytest.mark.asyncio
    async def test_checker_timeout_overrides_default(self, aggregator, revision):
        verdict = await aggregator.evaluate(revision, [StubChecker("slow", delay_s=1, timeout_s=0.05)])
        assert verdict.checks[0].reason == "Timeout"

    @pytest.mark.asyncio
    async def test_skipped_checker_does_not_pass(self, aggregator, revision):
        verdict = await aggregator.evaluate(revision, [StubChecker("a", StageOutcome.SKIPPED)])
        assert not verdict.passed


class TestOrderingAndConcurrency:
    @pytest.mark.asyncio
    async def test_findings_by_registration_then_severity(self, aggregator, revision):
        low = Finding(checker="first", severity=Severity.LOW, message="low")
        crit = Finding(checker="first", severity=Severity.CRITICAL, message="crit")
        med = Finding(checker="second", severity=Severity.MEDIUM, message="med")
        verdict = await aggregator.evaluate(
            revision,
            [
                StubChecker("first", StageOutcome.FAIL, [low, crit], delay_s=0.05),
                StubChecker("second", StageOutcome.FAIL, [med]),
            ],
        )
        assert [f.message for f in verdict.findings] == ["crit", "low", "med"]

    @pytest.mark.asyncio
    async def test_checkers_run_concurrently(self, aggregator, revision):
        checkers = [StubChecker(f"c{i}", delay_s=0.2) for i in range(5)]
        start = time.monotonic()
        await aggregator.evaluate(revision, checkers)
        assert time.monotonic() - start < 0.8

    @pytest.mark.asyncio
    async def test_same_snapshot_for_all(self, aggregator, revision):
        checkers = [StubChecker("a"), StubChecker("b")]
        await aggregator.evaluate(revision, checkers)
        assert checkers[0].seen == checkers[1].seen == [revision.revision_id]

    @pytest.mark.asyncio
    async def test_result_attributed_to_registered_name(self, aggregator, revision):
        class Misnamed(StubChecker):
            async def check(self, snapshot):
                result = await super().check(snapshot)
                return result.model_copy(update={"checker": "other"})

        verdict = await aggregator.evaluate(revision, [Misnamed("real")])
        assert verdict.checks[0].checker == "real"
