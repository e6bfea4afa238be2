# src/api/facade.py — v1
"""Public API facade: assemble a ready-to-use pipeline from Settings.

Usage:
    from deploygate.api.facade import build_pipeline
    app = build_pipeline(settings, cipher=my_kms_cipher)
    run = await app.controller.on_new_revision(revision)
    run = await app.controller.run_to_completion(run)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from deploygate.approval.gate import ApprovalGate
from deploygate.config.pipeline_config import PipelineConfig
from deploygate.config.settings import Settings
from deploygate.core.authorizer import AllowListAuthorizer, BaseAuthorizer
from deploygate.executor.applier import BaseApplier, CommandApplier
from deploygate.executor.stage_executor import StageExecutor
from deploygate.notify.publisher import EventPublisher, create_publisher
from deploygate.pipeline.controller import PipelineController
from deploygate.scan.aggregator import ScanAggregator
from deploygate.scan.base_checker import BaseChecker
from deploygate.state.base_state_store import BaseStateStore
from deploygate.state.lock import StateLock
from deploygate.state.store_factory import create_state_store
from deploygate.storage.artifact_store import ArtifactStore
from deploygate.storage.backend_factory import create_artifact_store
from deploygate.storage.cipher import BaseCipher

logger = logging.getLogger(__name__)


@dataclass
class DeployGate:
    """Wired components sharing one store and one artifact store."""

    settings: Settings
    config: PipelineConfig
    store: BaseStateStore
    artifacts: ArtifactStore
    gate: ApprovalGate
    lock: StateLock
    publisher: EventPublisher
    controller: PipelineController

    def close(self) -> None:
        self.store.close()


def build_pipeline(
    settings: Settings | None = None,
    *,
    cipher: BaseCipher | None = None,
    store: BaseStateStore | None = None,
    artifacts: ArtifactStore | None = None,
    applier: BaseApplier | None = None,
    checkers: list[BaseChecker] | None = None,
    authorizer: BaseAuthorizer | None = None,
    publisher: EventPublisher | None = None,
) -> DeployGate:
    """Build every component from settings; any of them may be injected.

    Args:
        settings: Global settings. Loaded from .env if None.
        cipher: Envelope cipher for the artifact store (key management).
        store: State store. Created from settings if None.
        artifacts: Artifact store. Created from settings if None.
        applier: Apply implementation. CommandApplier over APPLY_COMMANDS if None.
        checkers: Checkers. Built from CHECKERS specs if None.
        authorizer: Approval/lock authorizer. Allow-lists from settings if None.
        publisher: Notification publisher. Log (+ Redis) subscribers if None.

    Raises:
        ConfigurationError: If the artifact store would not encrypt at rest.
    """
    settings = settings or Settings()
    config = PipelineConfig.from_settings(settings, checkers=checkers)

    store = store or create_state_store(settings)
    artifacts = artifacts or create_artifact_store(settings, cipher=cipher)
    authorizer = authorizer or AllowListAuthorizer(
        approvers=settings.approvers_list,
        targets=settings.lockable_targets_list,
    )
    publisher = publisher or create_publisher(settings)

    applier = applier or CommandApplier(
        store=store,
        artifacts=artifacts,
        commands=config.apply_commands,
        timeout_s=config.stage_timeout_s,
        env_passthrough=config.env_passthrough,
    )
    gate = ApprovalGate(
        store,
        authorizer=authorizer,
        poll_interval_s=config.approval_poll_interval_s,
    )
    lock = StateLock(store, authorizer=authorizer)
    controller = PipelineController(
        config=config,
        store=store,
        artifacts=artifacts,
        executor=StageExecutor(artifacts, config, applier=applier),
        aggregator=ScanAggregator(default_timeout_s=settings.checker_timeout_s),
        gate=gate,
        lock=lock,
        publisher=publisher,
    )
    logger.debug(
        "Pipeline ready: state=%s, artifacts=%s, %d checkers",
        settings.state_backend, settings.artifact_backend, len(config.checkers),
    )
    return DeployGate(
        settings=settings,
        config=config,
        store=store,
        artifacts=artifacts,
        gate=gate,
        lock=lock,
        publisher=publisher,
        controller=controller,
    )
