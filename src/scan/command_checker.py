# src/scan/command_checker.py — v1
"""Adapter running an external scanner command as a checker.

The scanner runs in an isolated copy of the snapshot. Exit code 0 with no
blocking findings is a Pass; any other exit code is a Fail. When the tool
prints JSON, findings are read from it in one of these shapes::

    [{"severity": "high", "message": "...", "resource": "..."}]
    {"findings": [...]}   or   {"results": [...]}
"""

from __future__ import annotations

import json
import logging
from typing import Any

from deploygate.core.errors import ExecutionError
from deploygate.core.models import CheckResult, Finding, Revision, Severity, StageOutcome
from deploygate.executor.process import build_env, materialize, run_command
from deploygate.scan.base_checker import BaseChecker

logger = logging.getLogger(__name__)

_MESSAGE_KEYS = ("message", "description", "rule_description", "check_name", "title")
_RESOURCE_KEYS = ("resource", "location", "file", "file_path")


class CommandChecker(BaseChecker):
    """Run ``command`` against the snapshot and map its result to a verdict.

    Args:
        name: Checker identifier.
        command: Argument vector, run with the snapshot as working directory.
        timeout_s: Per-checker timeout (None = aggregator default).
        fail_on: Minimum finding severity that fails the check on exit 0.
        env_passthrough: Environment variables forwarded to the tool.
    """

    def __init__(
        self,
        name: str,
        command: list[str],
        timeout_s: float | None = None,
        fail_on: Severity = Severity.LOW,
        env_passthrough: tuple[str, ...] = ("PATH", "HOME"),
    ) -> None:
        if not command:
            raise ValueError(f"Checker '{name}' has an empty command")
        self._name = name
        self._command = list(command)
        self._timeout_s = timeout_s
        self._fail_on = fail_on
        self._env_passthrough = env_passthrough

    @property
    def name(self) -> str:
        return self._name

    @property
    def timeout_s(self) -> float | None:
        return self._timeout_s

    async def check(self, snapshot: Revision) -> CheckResult:
        env = build_env(self._env_passthrough)
        # The aggregator enforces the timeout; this bound only applies to direct calls.
        timeout = self._timeout_s or 3600.0
        async with materialize(snapshot) as workdir:
            try:
                result = await run_command(self._command, workdir, env, timeout)
            except ExecutionError as exc:
                return self.result(
                    StageOutcome.ERROR,
                    [Finding(checker=self.name, severity=Severity.HIGH, message=str(exc))],
                    reason=exc.reason,
                )

        if result.timed_out:
            return self.result(StageOutcome.ERROR, reason="Timeout")

        findings = parse_findings(result.output, self.name)
        blocking = [f for f in findings if f.severity.rank >= self._fail_on.rank]

        if result.exit_code == 0 and not blocking:
            return self.result(StageOutcome.PASS, findings)

        if not findings:
            findings = [
                Finding(
                    checker=self.name,
                    severity=Severity.HIGH,
                    message=f"{self._command[0]} exited with code {result.exit_code}",
                )
            ]
        logger.info("Checker %s failed: exit=%s, %d findings", self.name, result.exit_code, len(findings))
        return self.result(StageOutcome.FAIL, findings, reason=f"ExitCode:{result.exit_code}")


def parse_findings(output: bytes, checker: str) -> list[Finding]:
    """Extract findings from scanner JSON output. Non-JSON output yields none."""
    text = output.decode("utf-8", errors="replace").strip()
    if not text:
        return []
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError:
        return []

    if isinstance(payload, dict):
        payload = payload.get("findings", payload.get("results", []))
    if not isinstance(payload, list):
        return []

    findings: list[Finding] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        message = next((str(item[k]) for k in _MESSAGE_KEYS if item.get(k)), "")
        if not message:
            continue
        resource = next((str(item[k]) for k in _RESOURCE_KEYS if item.get(k)), None)
        findings.append(
            Finding(
                checker=checker,
                severity=Severity.parse(item.get("severity")),
                message=message,
                resource=resource,
            )
        )
    return findings
