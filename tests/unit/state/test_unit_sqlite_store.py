# tests/unit/state/test_unit_sqlite_store.py — v1
"""SQLite-specific tests: durability across reopen."""

from __future__ import annotations

import pytest

from deploygate.core.models import DeploymentState, PipelineRun, RunStatus
from deploygate.state.sqlite_store import SqliteStateStore


class TestSqliteDurability:
    @pytest.mark.asyncio
    async def test_history_survives_restart(self, tmp_path):
        db = tmp_path / "nested" / "state.db"
        first = SqliteStateStore(db_path=db)
        run_id = await first.next_run_id()
        await first.save_run(PipelineRun(run_id=run_id, target="prod", revision_id="r", status=RunStatus.FAILED))
        await first.compare_and_set_state(DeploymentState(target="prod", version=1, state_digest="d"), 0)
        first.close()

        second = SqliteStateStore(db_path=db)
        try:
            assert (await second.get_run(run_id)).status == RunStatus.FAILED
            assert (await second.get_state("prod")).version == 1
            assert await second.next_run_id() > run_id
        finally:
            second.close()
