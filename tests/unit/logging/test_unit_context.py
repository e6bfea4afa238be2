# tests/unit/logging/test_unit_context.py — v1
"""Tests for logging/context.py: contextvars scoping."""

from __future__ import annotations

import asyncio

import pytest

from deploygate.logging.context import (
    clear_context,
    get_context,
    run_context,
    set_run_context,
    set_stage_context,
)


class TestContext:
    def teardown_method(self):
        clear_context()

    def test_set_and_clear(self):
        set_run_context(5, "prod")
        set_stage_context("apply")
        assert get_context().as_dict() == {"run_id": "5", "target": "prod", "stage": "apply"}
        clear_context()
        assert get_context().as_dict() == {}

    def test_run_context_restores_previous(self):
        set_run_context(1, "staging")
        with run_context(2, "prod"):
            set_stage_context("scan")
            assert get_context().run_id == "2"
        ctx = get_context()
        assert ctx.run_id == "1"
        assert ctx.target == "staging"
        assert ctx.stage is None

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self):
        async def worker(run_id: int) -> str | None:
            with run_context(run_id, f"t{run_id}"):
                await asyncio.sleep(0)
                return get_context().target

        assert await asyncio.gather(worker(1), worker(2)) == ["t1", "t2"]
