# tests/unit/pipeline/test_retry.py — v1
"""Tests for pipeline/retry.py."""

from __future__ import annotations

import pytest

from deploygate.config.pipeline_config import RetryPolicy
from deploygate.core.errors import ExecutionError, ValidationError
from deploygate.pipeline.retry import RetryExhausted, _compute_delay, with_retry

NO_WAIT = RetryPolicy(max_retries=2, base_delay_s=0.0, jitter=False)


class Flaky:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise ExecutionError("tool crashed", reason="Timeout")
        return value


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_first_try(self):
        result, attempts = await with_retry(Flaky(0), "ok", policy=NO_WAIT)
        assert (result, attempts) == ("ok", 1)

    @pytest.mark.asyncio
    async def test_recovers_within_budget(self):
        fn = Flaky(2)
        result, attempts = await with_retry(fn, "ok", policy=NO_WAIT)
        assert (result, attempts) == ("ok", 3)

    @pytest.mark.asyncio
    async def test_exhausted(self):
        fn = Flaky(5)
        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(fn, "ok", policy=NO_WAIT, label="validate")
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error.reason == "Timeout"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_policy_errors_not_retried(self):
        calls = []

        async def reject():
            calls.append(1)
            raise ValidationError("policy says no")

        with pytest.raises(ValidationError):
            await with_retry(reject, policy=NO_WAIT)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_fault_gives_up_at_once(self):
        calls = []

        async def unsafe():
            calls.append(1)
            raise ExecutionError("bad path", reason="UnsafePath", retryable=False)

        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(unsafe, policy=NO_WAIT)
        assert exc_info.value.attempts == 1
        assert exc_info.value.last_error.reason == "UnsafePath"
        assert len(calls) == 1


class TestComputeDelay:
    def test_exponential(self):
        policy = RetryPolicy(base_delay_s=1.0, backoff_factor=2.0, jitter=False)
        assert [_compute_delay(policy, n) for n in range(3)] == [1.0, 2.0, 4.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay_s=1.0, backoff_factor=2.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= _compute_delay(policy, 1) <= 3.0
