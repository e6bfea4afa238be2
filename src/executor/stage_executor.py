# src/executor/stage_executor.py — v1
"""StageExecutor: run one stage's commands and translate exit status.

Command output is captured as the stage's raw log and stored in the
artifact store; it is never parsed here. Only the checker adapters inside
the scan package read tool output.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping

from deploygate.config.pipeline_config import PipelineConfig
from deploygate.core.errors import ApplyError, ConflictError, ExecutionError, StaleStateError
from deploygate.core.models import (
    LockHandle,
    Revision,
    Stage,
    StageOutcome,
    StageResult,
    utcnow,
)
from deploygate.executor.applier import ApplyOutcome, BaseApplier
from deploygate.executor.process import build_env, materialize, run_command
from deploygate.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class StageExecutor:
    """Execute stage commands in an isolated workdir.

    Args:
        artifacts: Artifact store receiving raw logs.
        config: Pipeline configuration (commands, timeouts, env whitelist).
        applier: Deployment applier used by the Apply stage.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        config: PipelineConfig,
        applier: BaseApplier | None = None,
    ) -> None:
        self._artifacts = artifacts
        self._config = config
        self._applier = applier

    async def run(
        self,
        stage: Stage,
        revision: Revision,
        env: Mapping[str, str] | None = None,
    ) -> StageResult:
        """Run a stage once; transient faults become an Error result."""
        started = utcnow()
        try:
            return await self.execute(stage, revision, env)
        except ExecutionError as exc:
            return self.error_result(stage, revision, exc, started=started)

    async def execute(
        self,
        stage: Stage,
        revision: Revision,
        env: Mapping[str, str] | None = None,
    ) -> StageResult:
        """Run a stage once.

        Returns a Pass result, or an Error result for a non-zero exit.

        Raises:
            ExecutionError: On timeout or spawn failure (retryable).
        """
        if stage == Stage.APPLY:
            raise ValueError("Apply runs through StageExecutor.apply() under the state lock")

        commands = self._config.commands_for(stage)
        started = utcnow()
        if not commands:
            logger.info("No commands configured for %s stage", stage.value)
            return StageResult(
                stage=stage,
                outcome=StageOutcome.PASS,
                revision_id=revision.revision_id,
                started_at=started,
                completed_at=utcnow(),
                reason="NoCommands",
            )

        full_env = build_env(self._config.env_passthrough, env)
        full_env.setdefault("DEPLOYGATE_STAGE", stage.value)
        full_env.setdefault("DEPLOYGATE_REVISION", revision.revision_id)

        transcript = bytearray()
        transient: ExecutionError | None = None
        failed_exit: int | None = None

        async with materialize(revision) as workdir:
            for argv in commands:
                try:
                    result = await run_command(argv, workdir, full_env, self._config.stage_timeout_s)
                except ExecutionError as exc:
                    transcript += f"{exc}\n".encode("utf-8")
                    transient = exc
                    break
                transcript += result.transcript()
                if result.timed_out:
                    transient = ExecutionError(
                        f"{argv[0]} timed out after {self._config.stage_timeout_s}s",
                        reason="Timeout",
                    )
                    break
                if result.exit_code != 0:
                    failed_exit = result.exit_code
                    break

        log_ref = await self._artifacts.put(bytes(transcript))

        if transient is not None:
            transient.log_ref = log_ref
            raise transient

        if failed_exit is not None:
            logger.warning("%s stage failed with exit code %d", stage.value, failed_exit)
            return StageResult(
                stage=stage,
                outcome=StageOutcome.ERROR,
                revision_id=revision.revision_id,
                started_at=started,
                completed_at=utcnow(),
                log_ref=log_ref,
                reason=f"ExitCode:{failed_exit}",
            )

        return StageResult(
            stage=stage,
            outcome=StageOutcome.PASS,
            revision_id=revision.revision_id,
            started_at=started,
            completed_at=utcnow(),
            log_ref=log_ref,
        )

    async def apply(
        self,
        revision: Revision,
        handle: LockHandle,
        expected_version: int,
    ) -> tuple[StageResult, ApplyOutcome | None]:
        """Run the Apply stage while holding ``handle``.

        Returns the stage result and, on success, the applied outcome.
        """
        if self._applier is None:
            raise RuntimeError("No applier configured for the Apply stage")
        if handle.target != revision.target:
            raise ConflictError(
                f"Lock is for '{handle.target}', revision targets '{revision.target}'"
            )
        if handle.is_expired():
            raise ConflictError(f"Lease on '{handle.target}' expired before apply")

        started = utcnow()
        try:
            outcome = await self._applier.apply(
                revision.target, revision, expected_version, handle.holder_run_id
            )
        except StaleStateError as exc:
            logger.error("Stale state: %s", exc.message)
            return (
                StageResult(
                    stage=Stage.APPLY,
                    outcome=StageOutcome.FAIL,
                    revision_id=revision.revision_id,
                    started_at=started,
                    completed_at=utcnow(),
                    reason="StaleState",
                ),
                None,
            )
        except ApplyError as exc:
            logger.error("Apply failed: %s", exc.message)
            return (
                StageResult(
                    stage=Stage.APPLY,
                    outcome=StageOutcome.ERROR,
                    revision_id=revision.revision_id,
                    started_at=started,
                    completed_at=utcnow(),
                    log_ref=exc.details.get("log_ref"),
                    reason=exc.details.get("reason", "ApplyError"),
                ),
                None,
            )

        return (
            StageResult(
                stage=Stage.APPLY,
                outcome=StageOutcome.PASS,
                revision_id=revision.revision_id,
                started_at=started,
                completed_at=utcnow(),
                log_ref=outcome.log_ref,
                reason="" if outcome.changed else "Unchanged",
            ),
            outcome,
        )

    @staticmethod
    def error_result(
        stage: Stage,
        revision: Revision,
        exc: ExecutionError,
        attempts: int = 1,
        started: datetime | None = None,
    ) -> StageResult:
        """Error result for a stage whose execution faulted."""
        return StageResult(
            stage=stage,
            outcome=StageOutcome.ERROR,
            revision_id=revision.revision_id,
            started_at=started or utcnow(),
            completed_at=utcnow(),
            log_ref=exc.log_ref,
            reason=exc.reason or "ExecutionError",
            attempts=attempts,
        )
