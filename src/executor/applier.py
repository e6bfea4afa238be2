# src/executor/applier.py — v1
"""Deployment-apply interface and the command-driven implementation.

The desired state is opaque: the applier never interprets the revision's
files, it only hands them to the configured apply tooling and records the
resulting DeploymentState version. Applies are idempotent: re-applying a
desired state the target already has returns the current version untouched.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from deploygate.core.errors import ApplyError, ExecutionError, StaleStateError
from deploygate.core.fingerprint import revision_digest
from deploygate.core.models import DeploymentState, Revision
from deploygate.executor.process import build_env, materialize, run_command
from deploygate.state.base_state_store import BaseStateStore
from deploygate.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class ApplyOutcome:
    """Resulting state of an apply plus the captured tool output."""

    state: DeploymentState
    log_ref: str | None = None
    changed: bool = True


class BaseApplier(ABC):
    """Mutates a deployment target. Must be safe to re-drive after a crash."""

    @abstractmethod
    async def apply(
        self,
        target: str,
        desired_state: Revision,
        expected_version: int,
        run_id: int,
    ) -> ApplyOutcome:
        """Bring ``target`` to ``desired_state``.

        Raises:
            StaleStateError: If the target is no longer at expected_version.
            ApplyError: If the apply tooling fails.
        """


class CommandApplier(BaseApplier):
    """Run apply commands against the materialized desired state.

    Args:
        store: State store where new versions are committed.
        artifacts: Artifact store receiving the apply transcript.
        commands: Apply command lines, run in order.
        timeout_s: Per-command timeout.
        env_passthrough: Environment variables forwarded to commands.
    """

    def __init__(
        self,
        store: BaseStateStore,
        artifacts: ArtifactStore,
        commands: tuple[tuple[str, ...], ...],
        timeout_s: float,
        env_passthrough: tuple[str, ...] = (),
    ) -> None:
        self._store = store
        self._artifacts = artifacts
        self._commands = commands
        self._timeout_s = timeout_s
        self._env_passthrough = env_passthrough

    async def apply(
        self,
        target: str,
        desired_state: Revision,
        expected_version: int,
        run_id: int,
    ) -> ApplyOutcome:
        digest = revision_digest(desired_state.files)
        current = await self._store.get_state(target)

        if current.version > 0 and current.state_digest == digest:
            logger.info("%s already at desired state (v%d), nothing to apply", target, current.version)
            return ApplyOutcome(state=current, changed=False)

        if current.version != expected_version:
            raise StaleStateError(target, expected_version, current.version)

        transcript = bytearray()
        env = build_env(
            self._env_passthrough,
            {"DEPLOYGATE_TARGET": target, "DEPLOYGATE_RUN_ID": str(run_id)},
        )
        failure: str | None = None
        try:
            async with materialize(desired_state) as workdir:
                for argv in self._commands:
                    result = await run_command(argv, workdir, env, self._timeout_s)
                    transcript += result.transcript()
                    if result.timed_out:
                        failure = "Timeout"
                        break
                    if result.exit_code != 0:
                        failure = f"ExitCode:{result.exit_code}"
                        break
        except ExecutionError as exc:
            transcript += f"{exc}\n".encode("utf-8")
            failure = exc.reason or "SpawnFailed"

        log_ref = await self._artifacts.put(bytes(transcript))
        if failure is not None:
            raise ApplyError(
                f"Apply to '{target}' failed ({failure})",
                {"target": target, "reason": failure, "log_ref": log_ref},
            )

        new_state = DeploymentState(
            target=target,
            version=expected_version + 1,
            state_digest=digest,
            run_id=run_id,
        )
        if not await self._store.compare_and_set_state(new_state, expected_version):
            actual = (await self._store.get_state(target)).version
            raise StaleStateError(target, expected_version, actual)

        logger.info("Applied %s to %s: v%d -> v%d", desired_state.revision_id, target, expected_version, new_state.version)
        return ApplyOutcome(state=new_state, log_ref=log_ref)
