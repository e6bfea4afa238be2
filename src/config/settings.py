# src/config/settings.py — v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for all deployment-specific settings. Every variable
is read with the ``DEPLOYGATE_`` prefix, e.g. ``DEPLOYGATE_STATE_BACKEND``.
Structured values (stage commands, checker specs) are JSON encoded.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DEPLOYGATE_",
        extra="ignore",
    )

    # === STATE STORE ===
    state_backend: Literal["sqlite", "redis"] = "sqlite"
    state_sqlite_path: Path = Path("~/.deploygate/state.db")
    state_redis_url: str = ""
    state_redis_prefix: str = "deploygate:"

    # === ARTIFACT STORE ===
    artifact_backend: Literal["local", "s3"] = "local"
    artifact_root: Path = Path("~/.deploygate/artifacts")
    artifact_s3_bucket: str = ""
    artifact_s3_prefix: str = "deploygate/"
    artifact_s3_region: str = ""
    artifact_s3_endpoint_url: str = ""
    # KMS key for s3 SSE-KMS and for ARTIFACT_CIPHER=kms; the key stays in KMS.
    artifact_kms_key_id: str = ""
    artifact_kms_region: str = ""
    # "kms" for envelope encryption, or the dotted path of a BaseCipher.
    artifact_cipher: str = ""

    # === STAGES ===
    # {"source": [[...]], "validate": [["terraform", "validate"]], ...}
    stage_commands: dict[str, list[list[str]]] = {}
    apply_commands: list[list[str]] = []
    stage_timeout_s: float = 900.0
    stage_env_passthrough: str = "PATH,HOME,LANG"

    # === SCAN ===
    # [{"name": "tfsec", "command": ["tfsec", "--format", "json", "."]}, ...]
    checkers: list[dict[str, Any]] = []
    checker_timeout_s: float = 300.0

    # === APPROVAL ===
    approval_deadline_s: float = 24 * 3600.0
    approval_poll_interval_s: float = 5.0
    approvers: str = ""

    # === LOCKING ===
    lock_lease_s: float = 1800.0
    lock_wait_s: float = 0.0
    lock_poll_interval_s: float = 5.0
    lockable_targets: str = ""

    # === RETRIES ===
    retry_limit: int = 2
    retry_backoff_s: float = 1.0
    retry_backoff_factor: float = 2.0

    # === CONCURRENCY ===
    concurrency_policy: Literal["reject", "queue"] = "reject"

    # === NOTIFICATIONS ===
    notify_redis_url: str = ""
    notify_redis_channel: str = "deploygate:events"
    notify_max_attempts: int = 3

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30
    # One JSON log file per run under <dir>/<target>/run-<id>.log
    log_run_dir: Path | None = None

    # --- Validators ---

    @field_validator(
        "stage_timeout_s",
        "checker_timeout_s",
        "approval_deadline_s",
        "approval_poll_interval_s",
        "lock_lease_s",
        "lock_poll_interval_s",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:  # noqa: N805
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("retry_limit", "lock_wait_s")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:  # noqa: N805
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("stage_commands")
    @classmethod
    def validate_stage_names(
        cls, v: dict[str, list[list[str]]]
    ) -> dict[str, list[list[str]]]:  # noqa: N805
        known = {"source", "validate", "scan"}
        unknown = set(v) - known
        if unknown:
            raise ValueError(
                f"stage_commands has unknown stages {sorted(unknown)}; "
                "apply commands go in apply_commands"
            )
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.state_backend == "redis" and not self.state_redis_url:
            errors.append("STATE_BACKEND=redis requires STATE_REDIS_URL")

        if self.artifact_backend == "s3":
            if not self.artifact_s3_bucket:
                errors.append("ARTIFACT_BACKEND=s3 requires ARTIFACT_S3_BUCKET")
            if not self.artifact_kms_key_id and not self.artifact_cipher:
                errors.append(
                    "ARTIFACT_BACKEND=s3 requires ARTIFACT_KMS_KEY_ID or "
                    "ARTIFACT_CIPHER (blobs must be encrypted at rest)"
                )

        if self.artifact_cipher == "kms" and not self.artifact_kms_key_id:
            errors.append("ARTIFACT_CIPHER=kms requires ARTIFACT_KMS_KEY_ID")

        if self.approval_poll_interval_s > self.approval_deadline_s:
            errors.append("APPROVAL_POLL_INTERVAL_S must be <= APPROVAL_DEADLINE_S")

        names = [c.get("name") for c in self.checkers]
        if any(not n for n in names):
            errors.append("Every checker spec needs a name")
        elif len(set(names)) != len(names):
            errors.append("Checker names must be unique")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def approvers_list(self) -> list[str]:
        """Parse comma-separated approver identities."""
        return [a.strip() for a in self.approvers.split(",") if a.strip()]

    @property
    def lockable_targets_list(self) -> list[str]:
        """Parse comma-separated lockable targets."""
        return [t.strip() for t in self.lockable_targets.split(",") if t.strip()]

    @property
    def stage_env_passthrough_list(self) -> list[str]:
        """Parse comma-separated environment variables passed to stage commands."""
        return [e.strip() for e in self.stage_env_passthrough.split(",") if e.strip()]


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-target config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
