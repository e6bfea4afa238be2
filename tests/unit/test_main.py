# tests/unit/test_main.py — v1
"""Tests for main.py: CLI commands end to end over SQLite."""

from __future__ import annotations

import json
import logging
import re

import pytest

from deploygate.main import main

NO_PUBLIC_ACL = json.dumps(
    [{"name": "no-public-acl", "patterns": {r'acl\s*=\s*"public-read"': "public-read ACL"}}]
)


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    """Isolated settings: temp state/artifacts, XOR cipher, fast approvals."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DEPLOYGATE_STATE_SQLITE_PATH", str(tmp_path / "state.db"))
    monkeypatch.setenv("DEPLOYGATE_ARTIFACT_ROOT", str(tmp_path / "artifacts"))
    monkeypatch.setenv("DEPLOYGATE_ARTIFACT_CIPHER", "tests.conftest.XorCipher")
    monkeypatch.setenv("DEPLOYGATE_CHECKERS", NO_PUBLIC_ACL)
    monkeypatch.setenv("DEPLOYGATE_APPROVAL_POLL_INTERVAL_S", "0.01")
    monkeypatch.setenv("DEPLOYGATE_LOG_FORMAT", "text")
    yield
    logging.getLogger("deploygate").handlers.clear()


@pytest.fixture
def infra_dir(tmp_path):
    root = tmp_path / "infra"
    root.mkdir()
    (root / "main.tf").write_text('resource "aws_s3_bucket" "logs" {\n  acl = "private"\n}\n')
    return root


def _token(stdout: str) -> str:
    match = re.search(r"Approval token: ([0-9a-f]+)", stdout)
    assert match, stdout
    return match.group(1)


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "trigger" in capsys.readouterr().out

    def test_trigger_approve_resume(self, infra_dir, capsys):
        assert main(["trigger", "prod", str(infra_dir), "--detach"]) == 0
        out = capsys.readouterr().out
        token = _token(out)
        assert '"status": "awaiting_approval"' in out

        assert main(["approve", token, "--approver", "alice"]) == 0
        assert "approved by alice" in capsys.readouterr().out

        assert main(["resume", "1"]) == 0
        assert '"status": "succeeded"' in capsys.readouterr().out

        assert main(["runs", "prod"]) == 0
        assert "succeeded" in capsys.readouterr().out

    def test_reject(self, infra_dir, capsys):
        main(["trigger", "prod", str(infra_dir), "--detach"])
        token = _token(capsys.readouterr().out)
        assert main(["reject", token, "--approver", "bob", "--comment", "wrong window"]) == 0
        assert main(["resume", "1"]) == 1
        assert '"reason": "Rejected"' in capsys.readouterr().out

    def test_failing_scan_exits_nonzero(self, infra_dir, capsys):
        (infra_dir / "main.tf").write_text('resource "aws_s3_bucket" "b" {\n  acl = "public-read"\n}\n')
        assert main(["trigger", "prod", str(infra_dir)]) == 1
        out = capsys.readouterr().out
        assert '"status": "failed"' in out
        assert "Approval token" not in out

    def test_cancel(self, infra_dir, capsys):
        main(["trigger", "prod", str(infra_dir), "--detach"])
        capsys.readouterr()
        assert main(["cancel", "1"]) == 0
        assert '"status": "cancelled"' in capsys.readouterr().out

    def test_unknown_run(self, capsys):
        assert main(["status", "42"]) == 1
        assert main(["runs"]) == 0
        assert "No runs." in capsys.readouterr().out

    def test_trigger_requires_directory(self, tmp_path):
        assert main(["trigger", "prod", str(tmp_path / "missing")]) == 1

    def test_maintenance_commands(self, capsys):
        assert main(["reclaim-locks"]) == 0
        assert main(["expire-approvals"]) == 0
        out = capsys.readouterr().out
        assert "Reclaimed 0 expired lock(s)." in out
        assert "Expired 0 approval(s)." in out

    def test_unencrypted_store_refused(self, monkeypatch, infra_dir):
        monkeypatch.delenv("DEPLOYGATE_ARTIFACT_CIPHER")
        assert main(["trigger", "prod", str(infra_dir)]) == 1
