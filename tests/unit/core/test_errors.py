# tests/unit/core/test_errors.py — v1
"""Tests for core/errors.py: hierarchy and payloads."""

from __future__ import annotations

from deploygate.core.errors import (
    ApplyError,
    DeployGateError,
    ExecutionError,
    ScanFailure,
    StaleStateError,
)
from deploygate.core.models import Finding


class TestErrors:
    def test_details_default(self):
        err = DeployGateError("boom")
        assert err.message == "boom"
        assert err.details == {}

    def test_stale_state_is_apply_error(self):
        err = StaleStateError("prod", expected=3, actual=4)
        assert isinstance(err, ApplyError)
        assert err.details == {"target": "prod", "expected": 3, "actual": 4}
        assert "version 4" in err.message

    def test_execution_error_carries_reason(self):
        err = ExecutionError("took too long", reason="Timeout", log_ref="sha256:" + "0" * 64)
        assert err.reason == "Timeout"
        assert err.log_ref.startswith("sha256:")

    def test_scan_failure_keeps_findings(self):
        finding = Finding(checker="tfsec", message="public bucket")
        err = ScanFailure("scan failed", [finding])
        assert err.findings == [finding]
        assert err.details == {"findings": 1}
