# src/config/pipeline_config.py — v1
"""PipelineConfig: explicit value object handed to the controller.

Replaces ambient role/policy bindings. Built from Settings once at startup;
the controller never reads Settings directly.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from deploygate.core.models import Stage
from deploygate.scan.base_checker import BaseChecker

if TYPE_CHECKING:
    from deploygate.config.settings import Settings

Command = tuple[str, ...]


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient execution errors."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = 2
    base_delay_s: float = 1.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return self.base_delay_s * (self.backoff_factor ** attempt)


class PipelineConfig(BaseModel):
    """Checker list, timeouts, approval deadline and retry limits."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    checkers: tuple[BaseChecker, ...] = ()
    stage_commands: dict[Stage, tuple[Command, ...]] = Field(default_factory=dict)
    apply_commands: tuple[Command, ...] = ()
    stage_timeout_s: float = 900.0
    env_passthrough: tuple[str, ...] = ("PATH", "HOME", "LANG")
    approval_deadline: timedelta = timedelta(hours=24)
    approval_poll_interval_s: float = 5.0
    lock_lease: timedelta = timedelta(minutes=30)
    lock_wait_s: float = 0.0
    lock_poll_interval_s: float = 5.0
    retry: RetryPolicy = RetryPolicy()
    concurrency_policy: Literal["reject", "queue"] = "reject"

    def commands_for(self, stage: Stage) -> tuple[Command, ...]:
        """Configured commands for a stage (apply included)."""
        if stage == Stage.APPLY:
            return self.apply_commands
        return self.stage_commands.get(stage, ())

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        checkers: list[BaseChecker] | None = None,
    ) -> PipelineConfig:
        """Build the value object from Settings.

        Args:
            settings: Loaded application settings.
            checkers: Pre-built checkers. Built from ``settings.checkers``
                when omitted.
        """
        if checkers is None:
            from deploygate.scan.checker_factory import create_checkers

            checkers = create_checkers(settings)

        return cls(
            checkers=tuple(checkers),
            stage_commands={
                Stage(name): tuple(tuple(cmd) for cmd in commands)
                for name, commands in settings.stage_commands.items()
            },
            apply_commands=tuple(tuple(cmd) for cmd in settings.apply_commands),
            stage_timeout_s=settings.stage_timeout_s,
            env_passthrough=tuple(settings.stage_env_passthrough_list),
            approval_deadline=timedelta(seconds=settings.approval_deadline_s),
            approval_poll_interval_s=settings.approval_poll_interval_s,
            lock_lease=timedelta(seconds=settings.lock_lease_s),
            lock_wait_s=settings.lock_wait_s,
            lock_poll_interval_s=settings.lock_poll_interval_s,
            retry=RetryPolicy(
                max_retries=settings.retry_limit,
                base_delay_s=settings.retry_backoff_s,
                backoff_factor=settings.retry_backoff_factor,
            ),
            concurrency_policy=settings.concurrency_policy,
        )
