# src/core/models.py — v1
"""Core domain models: Revision, PipelineRun, StageResult, ScanVerdict, etc.

Everything that crosses a component boundary is a pydantic model. Records that
must never change after creation (revisions, stage results, verdicts,
decisions, deployment states, lock handles) are frozen.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deploygate.core.errors import ValidationError
from deploygate.core.fingerprint import canonical_digest, revision_digest


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# === ENUMS ===


class Stage(str, Enum):
    """Pipeline stage. Declaration order is execution order."""

    SOURCE = "source"
    VALIDATE = "validate"
    SCAN = "scan"
    APPROVAL = "approval"
    APPLY = "apply"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


def next_stage(stage: Stage | None) -> Stage | None:
    """Stage following ``stage`` (None before the first, None after Apply)."""
    if stage is None:
        return STAGE_ORDER[0]
    idx = STAGE_ORDER.index(stage)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


def stages_after(stage: Stage) -> list[Stage]:
    """All stages strictly after ``stage``."""
    return list(STAGE_ORDER[STAGE_ORDER.index(stage) + 1:])


class StageOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    FAILED = "failed"
    APPROVED = "approved"
    APPLYING = "applying"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset(
    {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.ROLLED_BACK,
    }
)

CANCELLABLE_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.PENDING, RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL}
)


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str | None) -> Severity:
        """Lenient parse of scanner-reported severities (unknown -> medium)."""
        if not value:
            return cls.MEDIUM
        normalized = value.strip().lower()
        aliases = {"warning": "medium", "warn": "medium", "error": "high", "moderate": "medium"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return cls.MEDIUM


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ApprovalDecisionKind(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class ApprovalTokenStatus(str, Enum):
    OPEN = "open"
    DECIDED = "decided"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


# === SOURCE ===


def is_safe_revision_path(path: str) -> bool:
    """True for a non-empty relative POSIX path that stays inside its root."""
    if not path or "\\" in path or "\x00" in path:
        return False
    rel = PurePosixPath(path)
    return bool(rel.parts) and not rel.is_absolute() and ".." not in rel.parts


class Revision(BaseModel):
    """Immutable snapshot of source input for one pipeline run."""

    model_config = ConfigDict(frozen=True)

    revision_id: str
    target: str
    files: dict[str, bytes] = Field(default_factory=dict)
    source_ref: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("files")
    @classmethod
    def _paths_stay_inside_root(cls, files: dict[str, bytes]) -> dict[str, bytes]:
        for path in files:
            if not is_safe_revision_path(path):
                raise ValueError(f"unsafe revision path {path!r}")
        return files

    @classmethod
    def create(
        cls,
        target: str,
        files: dict[str, bytes],
        revision_id: str | None = None,
        source_ref: str = "",
    ) -> Revision:
        """Build a revision; the id defaults to the content digest of files.

        Raises:
            ValidationError: A path is absolute, empty or escapes the root.
        """
        unsafe = sorted(path for path in files if not is_safe_revision_path(path))
        if unsafe:
            raise ValidationError(
                f"Revision for '{target}' has unsafe paths: {', '.join(map(repr, unsafe))}",
                {"target": target, "paths": unsafe},
            )
        ordered = {path: files[path] for path in sorted(files)}
        return cls(
            revision_id=revision_id or revision_digest(ordered),
            target=target,
            files=ordered,
            source_ref=source_ref,
        )

    def to_bundle(self) -> bytes:
        """Serialise to a self-contained JSON bundle for the artifact store."""
        payload = {
            "revision_id": self.revision_id,
            "target": self.target,
            "source_ref": self.source_ref,
            "created_at": self.created_at.isoformat(),
            "files": {
                path: base64.b64encode(content).decode("ascii")
                for path, content in self.files.items()
            },
        }
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bundle(cls, data: bytes) -> Revision:
        """Inverse of to_bundle()."""
        payload = json.loads(data.decode("utf-8"))
        return cls(
            revision_id=payload["revision_id"],
            target=payload["target"],
            source_ref=payload.get("source_ref", ""),
            created_at=datetime.fromisoformat(payload["created_at"]),
            files={
                path: base64.b64decode(encoded)
                for path, encoded in payload["files"].items()
            },
        )


# === FINDINGS / VERDICTS ===


class Finding(BaseModel):
    """One issue reported by a checker or a stage."""

    model_config = ConfigDict(frozen=True)

    checker: str
    severity: Severity = Severity.MEDIUM
    message: str
    resource: str | None = None


class CheckResult(BaseModel):
    """Outcome of a single checker against one snapshot."""

    model_config = ConfigDict(frozen=True)

    checker: str
    outcome: StageOutcome
    findings: list[Finding] = Field(default_factory=list)
    reason: str = ""
    duration_ms: int = 0


class ScanVerdict(BaseModel):
    """Unanimous-pass aggregation of all checker results for one revision."""

    model_config = ConfigDict(frozen=True)

    revision_id: str
    outcome: StageOutcome
    checks: list[CheckResult] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def passed(self) -> bool:
        return self.outcome == StageOutcome.PASS

    @property
    def digest(self) -> str:
        """Stable digest binding an approval to exactly this verdict."""
        return canonical_digest(self.model_dump(mode="json", exclude={"created_at"}))


class StageResult(BaseModel):
    """Recorded result of one stage. Appended to a run, never modified."""

    model_config = ConfigDict(frozen=True)

    stage: Stage
    outcome: StageOutcome
    revision_id: str
    findings: list[Finding] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime = Field(default_factory=utcnow)
    log_ref: str | None = None
    reason: str = ""
    attempts: int = 1

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @classmethod
    def skipped(cls, stage: Stage, revision_id: str, reason: str = "") -> StageResult:
        now = utcnow()
        return cls(
            stage=stage,
            outcome=StageOutcome.SKIPPED,
            revision_id=revision_id,
            started_at=now,
            completed_at=now,
            reason=reason,
            attempts=0,
        )


# === APPROVAL ===


class ApprovalDecision(BaseModel):
    """Decision recorded against an approval token."""

    model_config = ConfigDict(frozen=True)

    kind: ApprovalDecisionKind
    approver: str
    run_id: int
    revision_id: str
    verdict_digest: str
    decided_at: datetime = Field(default_factory=utcnow)
    comment: str = ""


class ApprovalToken(BaseModel):
    """Pending approval request, bound to one run, revision and verdict."""

    token: str
    run_id: int
    target: str
    revision_id: str
    verdict: ScanVerdict
    requested_at: datetime
    deadline: datetime
    status: ApprovalTokenStatus = ApprovalTokenStatus.OPEN
    decision: ApprovalDecision | None = None

    @property
    def is_open(self) -> bool:
        return self.status == ApprovalTokenStatus.OPEN

    def is_overdue(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.deadline


# === DEPLOYMENT STATE / LOCKING ===


class DeploymentState(BaseModel):
    """Versioned snapshot of what has been applied to a deployment target."""

    model_config = ConfigDict(frozen=True)

    target: str
    version: int = 0
    state_digest: str = ""
    run_id: int | None = None
    applied_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def initial(cls, target: str) -> DeploymentState:
        """Version 0: nothing applied yet."""
        return cls(target=target, version=0)


class LockHandle(BaseModel):
    """Proof of StateLock ownership for one target."""

    model_config = ConfigDict(frozen=True)

    target: str
    holder_run_id: int
    acquired_at: datetime
    lease_expires_at: datetime
    fencing_token: int

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.lease_expires_at

    def renewed(self, lease: timedelta, now: datetime | None = None) -> LockHandle:
        return self.model_copy(update={"lease_expires_at": (now or utcnow()) + lease})


# === RUN ===


class PipelineRun(BaseModel):
    """One execution attempt for a revision. Mutated only by the controller."""

    run_id: int
    target: str
    revision_id: str
    revision_ref: str = ""
    stage: Stage | None = None
    status: RunStatus = RunStatus.PENDING
    results: list[StageResult] = Field(default_factory=list)
    verdict: ScanVerdict | None = None
    approval_token: str | None = None
    expected_state_version: int | None = None
    applied_state_version: int | None = None
    error: str | None = None
    event_sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def result_for(self, stage: Stage) -> StageResult | None:
        """Most recent recorded result for a stage."""
        for result in reversed(self.results):
            if result.stage == stage:
                return result
        return None

    def record(self, result: StageResult) -> None:
        """Append a stage result and advance the stage cursor."""
        self.results.append(result)
        self.stage = result.stage
        self.updated_at = utcnow()

    def summary(self) -> dict[str, Any]:
        """Compact dict for logs and CLI output."""
        return {
            "run_id": self.run_id,
            "target": self.target,
            "revision_id": self.revision_id,
            "stage": self.stage.value if self.stage else None,
            "status": self.status.value,
            "results": [
                {"stage": r.stage.value, "outcome": r.outcome.value, "reason": r.reason}
                for r in self.results
            ],
            "error": self.error,
        }
