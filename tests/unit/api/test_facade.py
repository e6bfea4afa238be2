# tests/unit/api/test_facade.py — v1
"""Tests for api/facade.py: component wiring."""

from __future__ import annotations

import pytest

from deploygate.api.facade import build_pipeline
from deploygate.config.settings import ConfigurationError, Settings
from tests.conftest import StubChecker, XorCipher


def _settings(tmp_path, **overrides) -> Settings:
    return Settings(
        _env_file=None,
        state_sqlite_path=tmp_path / "state.db",
        artifact_root=tmp_path / "artifacts",
        **overrides,
    )


class TestBuildPipeline:
    def test_refuses_unencrypted_artifacts(self, tmp_path):
        with pytest.raises(ConfigurationError):
            build_pipeline(_settings(tmp_path))

    def test_cipher_from_settings(self, tmp_path):
        app = build_pipeline(_settings(tmp_path, artifact_cipher="tests.conftest.XorCipher"))
        try:
            assert app.config.concurrency_policy == "reject"
        finally:
            app.close()

    def test_injected_checkers_and_settings(self, tmp_path):
        checker = StubChecker("custom")
        app = build_pipeline(
            _settings(tmp_path, approval_deadline_s=60, lock_lease_s=120, retry_limit=4),
            cipher=XorCipher(),
            checkers=[checker],
        )
        try:
            assert app.config.checkers == (checker,)
            assert app.config.approval_deadline.total_seconds() == 60
            assert app.config.lock_lease.total_seconds() == 120
            assert app.config.retry.max_retries == 4
        finally:
            app.close()
