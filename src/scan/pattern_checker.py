# src/scan/pattern_checker.py — v1
"""In-process checker flagging forbidden text patterns in the snapshot."""

from __future__ import annotations

import fnmatch
import re

from deploygate.core.models import CheckResult, Finding, Revision, Severity, StageOutcome
from deploygate.scan.base_checker import BaseChecker


class ForbiddenPatternChecker(BaseChecker):
    """Fail when any file matching ``include`` contains a forbidden pattern.

    Args:
        name: Checker identifier.
        patterns: Regex -> message reported when it matches.
        include: Glob patterns selecting files to scan (default: all).
        severity: Severity assigned to every match.
    """

    def __init__(
        self,
        name: str,
        patterns: dict[str, str],
        include: list[str] | None = None,
        severity: Severity = Severity.HIGH,
        timeout_s: float | None = None,
    ) -> None:
        if not patterns:
            raise ValueError(f"Checker '{name}' has no patterns")
        self._name = name
        self._rules = [(re.compile(p, re.MULTILINE), msg) for p, msg in patterns.items()]
        self._include = include or ["*"]
        self._severity = severity
        self._timeout_s = timeout_s

    @property
    def name(self) -> str:
        return self._name

    @property
    def timeout_s(self) -> float | None:
        return self._timeout_s

    def _selected(self, path: str) -> bool:
        return any(fnmatch.fnmatch(path, glob) for glob in self._include)

    async def check(self, snapshot: Revision) -> CheckResult:
        findings: list[Finding] = []
        for path, content in snapshot.files.items():
            if not self._selected(path):
                continue
            text = content.decode("utf-8", errors="replace")
            for regex, message in self._rules:
                for match in regex.finditer(text):
                    line = text.count("\n", 0, match.start()) + 1
                    findings.append(
                        Finding(
                            checker=self.name,
                            severity=self._severity,
                            message=message,
                            resource=f"{path}:{line}",
                        )
                    )
        if findings:
            return self.result(StageOutcome.FAIL, findings)
        return self.result(StageOutcome.PASS)
