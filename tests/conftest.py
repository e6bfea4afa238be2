# tests/conftest.py — v1
"""Shared test fixtures for all unit and integration tests.

Provides a temp SQLite state store, an encrypted local artifact store,
sample revisions, stub checkers and a fully wired controller factory.
No external services: Redis and S3 are only exercised through fakes.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import timedelta

import pytest

from deploygate.approval.gate import ApprovalGate
from deploygate.config.pipeline_config import PipelineConfig, RetryPolicy
from deploygate.core.models import (
    CheckResult,
    Finding,
    Revision,
    Severity,
    Stage,
    StageOutcome,
)
from deploygate.executor.applier import CommandApplier
from deploygate.executor.stage_executor import StageExecutor
from deploygate.notify.publisher import EventPublisher
from deploygate.notify.subscribers import BaseSubscriber
from deploygate.pipeline.controller import PipelineController
from deploygate.scan.aggregator import ScanAggregator
from deploygate.scan.base_checker import BaseChecker
from deploygate.state.lock import StateLock
from deploygate.state.sqlite_store import SqliteStateStore
from deploygate.storage.artifact_store import ArtifactStore
from deploygate.storage.cipher import BaseCipher
from deploygate.storage.local_backend import LocalBlobBackend

PY = sys.executable


# === TEST DOUBLES ===


class XorCipher(BaseCipher):
    """Reversible toy cipher: enough to prove blobs are not stored in clear."""

    def __init__(self, key: bytes = b"deploygate-test-key") -> None:
        self._key = key

    @property
    def key_id(self) -> str:
        return "test-xor"

    def _xor(self, data: bytes) -> bytes:
        return bytes(b ^ self._key[i % len(self._key)] for i, b in enumerate(data))

    def encrypt(self, plaintext: bytes, context: str) -> bytes:
        return self._xor(plaintext)

    def decrypt(self, ciphertext: bytes, context: str) -> bytes:
        return self._xor(ciphertext)


class StubChecker(BaseChecker):
    """Checker returning a canned outcome, optionally after a delay or by raising."""

    def __init__(
        self,
        name: str,
        outcome: StageOutcome = StageOutcome.PASS,
        findings: list[Finding] | None = None,
        delay_s: float = 0.0,
        error: Exception | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self._name = name
        self._outcome = outcome
        self._findings = findings or []
        self._delay_s = delay_s
        self._error = error
        self._timeout_s = timeout_s
        self.seen: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def timeout_s(self) -> float | None:
        return self._timeout_s

    async def check(self, snapshot: Revision) -> CheckResult:
        self.seen.append(snapshot.revision_id)
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._error is not None:
            raise self._error
        return self.result(self._outcome, list(self._findings))


class RecordingSubscriber(BaseSubscriber):
    name = "recording"

    def __init__(self) -> None:
        self.events = []

    async def deliver(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.event.value for e in self.events]


# === FIXTURES: Sample data ===


@pytest.fixture
def revision() -> Revision:
    """Compliant two-file revision for target 'prod'."""
    return Revision.create(
        "prod",
        {
            "main.tf": b'resource "aws_s3_bucket" "logs" {\n  acl = "private"\n}\n',
            "vars.tf": b'variable "region" { default = "eu-west-1" }\n',
        },
    )


@pytest.fixture
def revision_v2() -> Revision:
    """A later revision for the same target."""
    return Revision.create(
        "prod",
        {"main.tf": b'resource "aws_s3_bucket" "logs" {\n  acl = "private"\n  versioning = true\n}\n'},
    )


@pytest.fixture
def public_bucket_finding() -> Finding:
    return Finding(
        checker="tfsec",
        severity=Severity.HIGH,
        message="S3 bucket has public-read ACL",
        resource="main.tf:2",
    )


# === FIXTURES: Components ===


@pytest.fixture
def store(tmp_path):
    s = SqliteStateStore(db_path=tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def cipher() -> XorCipher:
    return XorCipher()


@pytest.fixture
def artifacts(tmp_path, cipher) -> ArtifactStore:
    return ArtifactStore(LocalBlobBackend(tmp_path / "artifacts"), cipher=cipher)


@pytest.fixture
def subscriber() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def pipeline_config():
    """Factory for a fast PipelineConfig (no backoff, short deadlines)."""

    def _make(**overrides) -> PipelineConfig:
        defaults = dict(
            checkers=(StubChecker("tfsec"),),
            stage_timeout_s=10.0,
            env_passthrough=("PATH",),
            approval_deadline=timedelta(hours=1),
            approval_poll_interval_s=0.01,
            lock_lease=timedelta(minutes=5),
            lock_wait_s=0.0,
            lock_poll_interval_s=0.01,
            retry=RetryPolicy(max_retries=2, base_delay_s=0.0, jitter=False),
        )
        defaults.update(overrides)
        return PipelineConfig(**defaults)

    return _make


@pytest.fixture
def make_controller(store, artifacts, subscriber, pipeline_config):
    """Factory wiring a PipelineController over the shared store.

    Returns (controller, gate, lock). Extra keyword args go to PipelineConfig;
    ``applier`` and ``authorizer`` may be passed explicitly.
    """

    def _make(applier=None, authorizer=None, **config_overrides):
        config = pipeline_config(**config_overrides)
        applier = applier or CommandApplier(
            store=store,
            artifacts=artifacts,
            commands=config.apply_commands,
            timeout_s=config.stage_timeout_s,
            env_passthrough=config.env_passthrough,
        )
        gate = ApprovalGate(store, authorizer=authorizer, poll_interval_s=config.approval_poll_interval_s)
        lock = StateLock(store, authorizer=authorizer)
        controller = PipelineController(
            config=config,
            store=store,
            artifacts=artifacts,
            executor=StageExecutor(artifacts, config, applier=applier),
            aggregator=ScanAggregator(default_timeout_s=5.0),
            gate=gate,
            lock=lock,
            publisher=EventPublisher([subscriber], retry_delay_s=0.0),
        )
        return controller, gate, lock

    return _make


@pytest.fixture
def stage_commands():
    """Stage command map running the current interpreter."""

    def _make(**scripts: str) -> dict[Stage, tuple[tuple[str, ...], ...]]:
        return {Stage(name): ((PY, "-c", code),) for name, code in scripts.items()}

    return _make
