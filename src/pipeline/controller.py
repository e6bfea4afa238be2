# src/pipeline/controller.py — v1
"""PipelineController: drive runs through the fixed gated-deploy sequence.

    source -> validate -> scan -> approval -> apply

Each call to advance() executes exactly one stage and persists the run.
A failing stage halts the run, records the remaining stages as skipped and
never touches the state lock. Apply only happens for a revision whose Pass
verdict was approved, and only while holding the target's state lock.
"""

from __future__ import annotations

import asyncio
import logging

from deploygate.approval.gate import ApprovalGate
from deploygate.config.pipeline_config import PipelineConfig
from deploygate.core.errors import (
    ConflictError,
    IllegalTransitionError,
    IntegrityError,
    ScanFailure,
    ValidationError,
)
from deploygate.core.models import (
    CANCELLABLE_STATUSES,
    STAGE_ORDER,
    ApprovalDecisionKind,
    PipelineRun,
    Revision,
    RunStatus,
    Stage,
    StageOutcome,
    StageResult,
    next_stage,
    utcnow,
)
from deploygate.executor.stage_executor import StageExecutor
from deploygate.logging.context import run_context, set_stage_context
from deploygate.notify.events import EventKind, RunEvent
from deploygate.notify.publisher import EventPublisher
from deploygate.pipeline.retry import RetryExhausted, with_retry
from deploygate.pipeline.state import transition
from deploygate.scan.aggregator import ScanAggregator
from deploygate.state.base_state_store import BaseStateStore
from deploygate.state.lock import StateLock
from deploygate.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)

_PRE_APPROVAL_STAGES = (Stage.SOURCE, Stage.VALIDATE, Stage.SCAN)


class _RunCancelled(Exception):
    """The run was cancelled by another caller while a stage was executing."""

    def __init__(self, run: PipelineRun) -> None:
        super().__init__(f"Run {run.run_id} was cancelled")
        self.run = run


class PipelineController:
    """Owns every PipelineRun status change.

    Args:
        config: Checkers, commands, deadlines and retry limits.
        store: Durable run, state, token and lock persistence.
        artifacts: Content-addressed store for revisions and logs.
        executor: Runs stage commands and the apply.
        aggregator: Folds checker results into a verdict.
        gate: Approval barrier.
        lock: Per-target state lock.
        publisher: Notification fan-out (no subscribers if omitted).
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: BaseStateStore,
        artifacts: ArtifactStore,
        executor: StageExecutor,
        aggregator: ScanAggregator,
        gate: ApprovalGate,
        lock: StateLock,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._artifacts = artifacts
        self._executor = executor
        self._aggregator = aggregator
        self._gate = gate
        self._lock = lock
        self._publisher = publisher or EventPublisher()

    # --- Entry points ---

    async def on_new_revision(self, revision: Revision) -> PipelineRun:
        """Trigger a run for a new revision.

        Runs of the same target still awaiting approval of an older revision
        are superseded: their token is invalidated and they fail.
        """
        for active in await self._store.active_runs(revision.target):
            if (
                active.status == RunStatus.AWAITING_APPROVAL
                and active.revision_id != revision.revision_id
            ):
                await self._supersede(active, revision.revision_id)
        return await self.start(revision)

    async def start(self, revision: Revision) -> PipelineRun:
        """Persist the revision and create a pending run.

        Raises:
            ConflictError: Another run for the target is active and the
                concurrency policy is ``reject``.
        """
        active = await self._store.active_runs(revision.target)
        if active and self._config.concurrency_policy == "reject":
            holder = active[0]
            reason = f"Run {holder.run_id} is {holder.status.value} on '{revision.target}'"
            await self._publisher.publish(
                RunEvent(
                    event=EventKind.REJECTED,
                    run_id=None,
                    target=revision.target,
                    reason=reason,
                )
            )
            raise ConflictError(
                f"Rejected revision {revision.revision_id}: {reason}",
                {"target": revision.target, "active_run_id": holder.run_id},
            )

        revision_ref = await self._artifacts.put_revision(revision)
        run = PipelineRun(
            run_id=await self._store.next_run_id(),
            target=revision.target,
            revision_id=revision.revision_id,
            revision_ref=revision_ref,
        )
        event = self._publisher.event_for(EventKind.STARTED, run)
        await self._store.save_run(run)
        with run_context(run.run_id, run.target):
            logger.info(
                "Started run %d for %s (%d active)", run.run_id, revision.revision_id, len(active)
            )
            await self._publisher.publish(event)
        return run

    async def advance(self, run: PipelineRun) -> PipelineRun:
        """Execute the next stage of ``run`` and return the updated run.

        Raises:
            IllegalTransitionError: The run is terminal.
            ConflictError: Apply is due but the state lock is held by another
                run. The run stays ``approved`` and can be advanced later.
        """
        current = await self._load(run.run_id)
        if current.is_terminal:
            raise IllegalTransitionError(
                f"Run {current.run_id} is already {current.status.value}",
                {"run_id": current.run_id, "status": current.status.value},
            )

        with run_context(current.run_id, current.target):
            try:
                if current.status in (RunStatus.PENDING, RunStatus.RUNNING):
                    return await self._advance_pre_approval(current)
                if current.status == RunStatus.AWAITING_APPROVAL:
                    return await self._await_approval(current)
                return await self._apply(current)
            except _RunCancelled as cancelled:
                logger.info("Run %d was cancelled while executing", current.run_id)
                return cancelled.run

    async def run_to_completion(
        self, run: PipelineRun, stop_at_approval: bool = False
    ) -> PipelineRun:
        """Advance until the run is terminal.

        A run waiting for the state lock is retried every
        ``lock_poll_interval_s`` for up to ``lock_wait_s``; after that it is
        returned still ``approved``.

        Args:
            run: Run to drive.
            stop_at_approval: Return as soon as the run awaits approval.
        """
        waited = 0.0
        while not run.is_terminal:
            if stop_at_approval and run.status == RunStatus.AWAITING_APPROVAL:
                return run
            try:
                run = await self.advance(run)
                waited = 0.0
            except ConflictError:
                current = await self._load(run.run_id)
                if current.status != RunStatus.APPROVED:
                    raise
                if waited >= self._config.lock_wait_s:
                    logger.warning(
                        "Run %d is still waiting for the state lock on %s",
                        current.run_id, current.target,
                    )
                    return current
                await asyncio.sleep(self._config.lock_poll_interval_s)
                waited += self._config.lock_poll_interval_s
                run = current
        return run

    async def cancel(self, run: PipelineRun) -> PipelineRun:
        """Cancel a run that has not reached Apply.

        Raises:
            IllegalTransitionError: The run is approved, applying or terminal.
        """
        current = await self._load(run.run_id)
        if current.status not in CANCELLABLE_STATUSES:
            raise IllegalTransitionError(
                f"Run {current.run_id} cannot be cancelled while {current.status.value}",
                {"run_id": current.run_id, "status": current.status.value},
            )

        with run_context(current.run_id, current.target):
            if current.status == RunStatus.AWAITING_APPROVAL and current.approval_token:
                await self._gate.invalidate(current.approval_token)
            self._skip_remaining(current, "Cancelled")
            transition(current, RunStatus.CANCELLED)
            current.error = "Cancelled"
            event = self._publisher.event_for(EventKind.CANCELLED, current)
            await self._store.save_run(current)
            logger.info("Run %d cancelled", current.run_id)
            await self._publisher.publish(event)
        return current

    async def get_run(self, run_id: int) -> PipelineRun | None:
        return await self._store.get_run(run_id)

    async def list_runs(self, target: str | None = None) -> list[PipelineRun]:
        return await self._store.list_runs(target)

    # --- Pre-approval stages ---

    async def _advance_pre_approval(self, run: PipelineRun) -> PipelineRun:
        transition(run, RunStatus.RUNNING)
        stage = next_stage(run.stage)
        if stage not in _PRE_APPROVAL_STAGES:
            raise IllegalTransitionError(
                f"Run {run.run_id} is running with no pre-approval stage left",
                {"run_id": run.run_id, "stage": run.stage.value if run.stage else None},
            )
        set_stage_context(stage.value)

        try:
            revision = await self._load_revision(run)
        except (IntegrityError, KeyError) as e:
            run.record(self._error(stage, run.revision_id, "ArtifactUnavailable"))
            return await self._fail(run, f"Revision unavailable: {e}")

        if stage == Stage.SCAN:
            return await self._scan(run, revision)

        result = await self._execute(stage, revision)
        run.record(result)
        if result.outcome != StageOutcome.PASS:
            return await self._fail(run, f"{stage.value} stage failed: {result.reason}")
        await self._commit(run)
        logger.info("%s stage passed for %s", stage.value, run.revision_id)
        return run

    async def _execute(self, stage: Stage, revision: Revision) -> StageResult:
        started = utcnow()
        try:
            result, attempts = await with_retry(
                self._executor.execute,
                stage,
                revision,
                policy=self._config.retry,
                label=f"{stage.value} stage",
            )
        except RetryExhausted as e:
            logger.error("%s stage gave up after %d attempts", stage.value, e.attempts)
            return StageExecutor.error_result(
                stage, revision, e.last_error, attempts=e.attempts, started=started
            )
        return result.model_copy(update={"attempts": attempts})

    async def _scan(self, run: PipelineRun, revision: Revision) -> PipelineRun:
        log_ref = None
        if self._config.commands_for(Stage.SCAN):
            prepared = await self._execute(Stage.SCAN, revision)
            if prepared.outcome != StageOutcome.PASS:
                run.record(prepared)
                return await self._fail(run, f"scan commands failed: {prepared.reason}")
            log_ref = prepared.log_ref

        started = utcnow()
        verdict = await self._aggregator.evaluate(revision, self._config.checkers)
        run.verdict = verdict
        run.record(
            StageResult(
                stage=Stage.SCAN,
                outcome=verdict.outcome,
                revision_id=revision.revision_id,
                findings=verdict.findings,
                started_at=started,
                completed_at=utcnow(),
                log_ref=log_ref,
                reason="" if verdict.passed else "ScanFailed",
            )
        )
        if not verdict.passed:
            return await self._fail(run, f"Scan failed with {len(verdict.findings)} findings")

        run.expected_state_version = (await self._store.get_state(run.target)).version
        transition(run, RunStatus.AWAITING_APPROVAL)
        run.stage = Stage.APPROVAL
        await self._commit(run)

        token = await self._gate.request_approval(run, verdict, self._config.approval_deadline)
        run.approval_token = token.token
        event = self._publisher.event_for(EventKind.AWAITING_APPROVAL, run)
        await self._commit(run)
        await self._publisher.publish(event)
        return run

    # --- Approval ---

    async def _await_approval(self, run: PipelineRun) -> PipelineRun:
        set_stage_context(Stage.APPROVAL.value)
        if not run.approval_token:
            run.record(self._error(Stage.APPROVAL, run.revision_id, "MissingApprovalToken"))
            return await self._fail(run, "Run awaits approval without a token")

        try:
            decision = await self._gate.await_decision(run.approval_token)
        except ConflictError:
            current = await self._load(run.run_id)
            if current.is_terminal:
                return current
            current.record(self._failed(Stage.APPROVAL, current.revision_id, "Superseded"))
            return await self._fail(current, "Approval token was invalidated")

        token = await self._gate.get_token(run.approval_token)
        result = StageResult(
            stage=Stage.APPROVAL,
            outcome=StageOutcome.PASS,
            revision_id=run.revision_id,
            started_at=token.requested_at,
            completed_at=decision.decided_at,
        )

        if decision.kind == ApprovalDecisionKind.APPROVED:
            if (
                run.verdict is None
                or decision.revision_id != run.revision_id
                or decision.verdict_digest != run.verdict.digest
            ):
                run.record(result.model_copy(update={"outcome": StageOutcome.FAIL, "reason": "VerdictMismatch"}))
                return await self._fail(run, "Approval does not match the run's verdict")
            run.record(result)
            transition(run, RunStatus.APPROVED)
            await self._commit(run)
            logger.info("Run %d approved by %s", run.run_id, decision.approver)
            return run

        if decision.kind == ApprovalDecisionKind.REJECTED:
            run.record(result.model_copy(update={"outcome": StageOutcome.FAIL, "reason": "Rejected"}))
            return await self._fail(run, f"Rejected by {decision.approver}")

        run.record(result.model_copy(update={"outcome": StageOutcome.FAIL, "reason": "ApprovalTimeout"}))
        return await self._fail(run, f"Approval deadline {token.deadline.isoformat()} passed")

    async def _supersede(self, run: PipelineRun, new_revision_id: str) -> None:
        with run_context(run.run_id, run.target):
            if run.approval_token:
                await self._gate.invalidate(run.approval_token)
            run.record(self._failed(Stage.APPROVAL, run.revision_id, "Superseded"))
            logger.info("Run %d superseded by revision %s", run.run_id, new_revision_id)
            await self._fail(run, f"Superseded by revision {new_revision_id}")

    # --- Apply ---

    async def _apply(self, run: PipelineRun) -> PipelineRun:
        set_stage_context(Stage.APPLY.value)
        try:
            await self._verify_approved_verdict(run)
            revision = await self._load_revision(run)
        except (ScanFailure, ValidationError) as e:
            run.record(self._failed(Stage.APPLY, run.revision_id, "UnverifiedRevision"))
            return await self._fail(run, e.message)
        except (IntegrityError, KeyError) as e:
            run.record(self._error(Stage.APPLY, run.revision_id, "ArtifactUnavailable"))
            return await self._fail(run, f"Revision unavailable: {e}")

        expected = run.expected_state_version
        async with self._lock.held(run.target, run.run_id, self._config.lock_lease) as handle:
            if run.status == RunStatus.APPROVED:
                transition(run, RunStatus.APPLYING)
                await self._commit(run)
            try:
                result, outcome = await self._executor.apply(revision, handle, expected)
            except ConflictError as e:
                logger.error("Lost the state lock during apply: %s", e.message)
                result, outcome = self._error(Stage.APPLY, run.revision_id, "LockLost"), None
            except Exception:
                logger.exception("Applier crashed on %s", run.target)
                result, outcome = self._error(Stage.APPLY, run.revision_id, "ApplyCrashed"), None

        run.record(result)
        if result.outcome != StageOutcome.PASS or outcome is None:
            return await self._fail(run, f"Apply failed: {result.reason}")

        run.applied_state_version = outcome.state.version
        transition(run, RunStatus.SUCCEEDED)
        event = self._publisher.event_for(EventKind.SUCCEEDED, run)
        await self._commit(run)
        logger.info(
            "Run %d applied %s to %s (state v%d)",
            run.run_id, run.revision_id, run.target, outcome.state.version,
        )
        await self._publisher.publish(event)
        return run

    async def _verify_approved_verdict(self, run: PipelineRun) -> None:
        """Re-check, immediately before apply, that this exact revision passed
        the scan and that the approval covers the verdict it passed with.

        Raises:
            ScanFailure: No passing verdict bound to the run's revision.
            ValidationError: No matching approval decision.
        """
        verdict = run.verdict
        scan = run.result_for(Stage.SCAN)
        if (
            verdict is None
            or not verdict.passed
            or verdict.revision_id != run.revision_id
            or scan is None
            or scan.outcome != StageOutcome.PASS
            or scan.revision_id != run.revision_id
        ):
            raise ScanFailure(
                f"No passing scan verdict for revision {run.revision_id}",
                verdict.findings if verdict else [],
            )

        approval = run.result_for(Stage.APPROVAL)
        if approval is None or approval.outcome != StageOutcome.PASS or not run.approval_token:
            raise ValidationError(f"Revision {run.revision_id} was not approved")

        token = await self._gate.get_token(run.approval_token)
        decision = token.decision
        if (
            decision is None
            or decision.kind != ApprovalDecisionKind.APPROVED
            or decision.revision_id != run.revision_id
            or decision.verdict_digest != verdict.digest
        ):
            raise ValidationError(f"Approval does not cover revision {run.revision_id}")

        if run.expected_state_version is None:
            raise ValidationError("No state version was observed before approval")

    # --- Helpers ---

    async def _load(self, run_id: int) -> PipelineRun:
        run = await self._store.get_run(run_id)
        if run is None:
            raise ValidationError(f"Unknown run {run_id}", {"run_id": run_id})
        return run

    async def _load_revision(self, run: PipelineRun) -> Revision:
        revision = await self._artifacts.get_revision(run.revision_ref)
        if revision.revision_id != run.revision_id:
            raise IntegrityError(
                f"Stored revision {revision.revision_id} does not match run revision {run.revision_id}",
                {"revision_ref": run.revision_ref},
            )
        return revision

    async def _commit(self, run: PipelineRun) -> None:
        """Persist ``run`` unless it was cancelled concurrently."""
        stored = await self._store.get_run(run.run_id)
        if stored is not None and stored.status == RunStatus.CANCELLED and run.status != RunStatus.CANCELLED:
            raise _RunCancelled(stored)
        run.updated_at = utcnow()
        await self._store.save_run(run)

    async def _fail(self, run: PipelineRun, error: str) -> PipelineRun:
        self._skip_remaining(run, "PriorStageFailed")
        transition(run, RunStatus.FAILED)
        run.error = error
        event = self._publisher.event_for(EventKind.FAILED, run)
        await self._commit(run)
        logger.warning("Run %d failed: %s", run.run_id, error)
        await self._publisher.publish(event)
        return run

    @staticmethod
    def _skip_remaining(run: PipelineRun, reason: str) -> None:
        done = {result.stage for result in run.results}
        for stage in STAGE_ORDER:
            if stage not in done:
                run.results.append(StageResult.skipped(stage, run.revision_id, reason))

    @staticmethod
    def _failed(stage: Stage, revision_id: str, reason: str) -> StageResult:
        now = utcnow()
        return StageResult(
            stage=stage,
            outcome=StageOutcome.FAIL,
            revision_id=revision_id,
            started_at=now,
            completed_at=now,
            reason=reason,
        )

    @staticmethod
    def _error(stage: Stage, revision_id: str, reason: str) -> StageResult:
        now = utcnow()
        return StageResult(
            stage=stage,
            outcome=StageOutcome.ERROR,
            revision_id=revision_id,
            started_at=now,
            completed_at=now,
            reason=reason,
        )
