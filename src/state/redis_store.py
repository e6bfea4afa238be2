# src/state/redis_store.py — v1
"""Redis-based state store (STATE_BACKEND=redis).

Requires 'redis' package: pip install redis.
Suitable for multi-instance controller deployments. Compare-and-set
operations use WATCH/MULTI optimistic transactions. Leases are stored
without a Redis TTL: an expired lease stays visible until reclaimed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from deploygate.core.models import (
    ApprovalToken,
    ApprovalTokenStatus,
    DeploymentState,
    LockHandle,
    PipelineRun,
)
from deploygate.state.base_state_store import BaseStateStore

logger = logging.getLogger(__name__)


class RedisStateStore(BaseStateStore):
    """Redis-backed state store for distributed deployments."""

    def __init__(
        self,
        redis_url: str = "",
        prefix: str = "deploygate:",
        client: Any = None,
    ) -> None:
        try:
            import redis
        except ImportError as e:
            raise ImportError(
                "redis package required: pip install redis"
            ) from e

        self._watch_error = redis.WatchError
        self._client = client or redis.Redis.from_url(redis_url, decode_responses=True)
        self._p = prefix

    # --- key helpers ---

    def _run_key(self, run_id: int) -> str:
        return f"{self._p}run:{run_id}"

    def _runs_index(self, target: str | None = None) -> str:
        return f"{self._p}runs:{target}" if target else f"{self._p}runs"

    def _state_key(self, target: str, version: int) -> str:
        return f"{self._p}state:{target}:{version}"

    def _state_version_key(self, target: str) -> str:
        return f"{self._p}state_version:{target}"

    def _token_key(self, token_id: str) -> str:
        return f"{self._p}token:{token_id}"

    def _lock_key(self, target: str) -> str:
        return f"{self._p}lock:{target}"

    def _fence_key(self, target: str) -> str:
        return f"{self._p}fence:{target}"

    # --- Runs ---

    async def next_run_id(self) -> int:
        return int(self._client.incr(f"{self._p}run_seq"))

    async def save_run(self, run: PipelineRun) -> None:
        pipe = self._client.pipeline()
        pipe.set(self._run_key(run.run_id), run.model_dump_json())
        pipe.zadd(self._runs_index(), {str(run.run_id): run.run_id})
        pipe.zadd(self._runs_index(run.target), {str(run.run_id): run.run_id})
        pipe.execute()

    async def get_run(self, run_id: int) -> PipelineRun | None:
        data = self._client.get(self._run_key(run_id))
        if data is None:
            return None
        return PipelineRun.model_validate_json(data)

    async def list_runs(self, target: str | None = None) -> list[PipelineRun]:
        ids = self._client.zrange(self._runs_index(target), 0, -1)
        runs: list[PipelineRun] = []
        for run_id in ids:
            run = await self.get_run(int(run_id))
            if run is not None:
                runs.append(run)
        return runs

    # --- Deployment state ---

    async def get_state(self, target: str) -> DeploymentState:
        version = self._client.get(self._state_version_key(target))
        if version is None or int(version) == 0:
            return DeploymentState.initial(target)
        data = self._client.get(self._state_key(target, int(version)))
        if data is None:
            raise RuntimeError(f"State index for {target} points at missing v{version}")
        return DeploymentState.model_validate_json(data)

    async def compare_and_set_state(
        self, state: DeploymentState, expected_version: int
    ) -> bool:
        if state.version != expected_version + 1:
            raise ValueError(
                f"New version {state.version} does not follow expected {expected_version}"
            )
        version_key = self._state_version_key(state.target)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(version_key)
                    current = int(pipe.get(version_key) or 0)
                    if current != expected_version:
                        pipe.unwatch()
                        logger.warning(
                            "State CAS rejected for %s: expected v%d, found v%d",
                            state.target, expected_version, current,
                        )
                        return False
                    pipe.multi()
                    pipe.set(self._state_key(state.target, state.version), state.model_dump_json())
                    pipe.set(version_key, state.version)
                    pipe.execute()
                    return True
                except self._watch_error:
                    continue

    async def state_history(self, target: str) -> list[DeploymentState]:
        current = int(self._client.get(self._state_version_key(target)) or 0)
        history: list[DeploymentState] = []
        for version in range(1, current + 1):
            data = self._client.get(self._state_key(target, version))
            if data is not None:
                history.append(DeploymentState.model_validate_json(data))
        return history

    # --- Approval tokens ---

    async def save_token(self, token: ApprovalToken) -> None:
        pipe = self._client.pipeline()
        pipe.set(self._token_key(token.token), token.model_dump_json())
        pipe.sadd(f"{self._p}tokens", token.token)
        pipe.execute()

    async def compare_and_set_token(
        self, token: ApprovalToken, expected_status: ApprovalTokenStatus
    ) -> bool:
        token_key = self._token_key(token.token)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(token_key)
                    data = pipe.get(token_key)
                    if data is None or ApprovalToken.model_validate_json(data).status != expected_status:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(token_key, token.model_dump_json())
                    pipe.execute()
                    return True
                except self._watch_error:
                    continue

    async def get_token(self, token_id: str) -> ApprovalToken | None:
        data = self._client.get(self._token_key(token_id))
        if data is None:
            return None
        return ApprovalToken.model_validate_json(data)

    async def list_tokens(
        self, status: ApprovalTokenStatus | None = None
    ) -> list[ApprovalToken]:
        tokens: list[ApprovalToken] = []
        for token_id in self._client.smembers(f"{self._p}tokens"):
            token = await self.get_token(token_id)
            if token is not None and (status is None or token.status == status):
                tokens.append(token)
        return sorted(tokens, key=lambda t: t.run_id)

    # --- Locks ---

    async def try_acquire_lock(
        self,
        target: str,
        run_id: int,
        now: datetime,
        lease_expires_at: datetime,
    ) -> LockHandle | None:
        lock_key = self._lock_key(target)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(lock_key)
                    data = pipe.get(lock_key)
                    if data is not None and not LockHandle.model_validate_json(data).is_expired(now):
                        pipe.unwatch()
                        return None
                    # INCR runs immediately; gaps in fencing tokens are harmless.
                    fencing = int(self._client.incr(self._fence_key(target)))
                    handle = LockHandle(
                        target=target,
                        holder_run_id=run_id,
                        acquired_at=now,
                        lease_expires_at=lease_expires_at,
                        fencing_token=fencing,
                    )
                    pipe.multi()
                    pipe.set(lock_key, handle.model_dump_json())
                    pipe.execute()
                    return handle
                except self._watch_error:
                    continue

    async def get_lock(self, target: str) -> LockHandle | None:
        data = self._client.get(self._lock_key(target))
        if data is None:
            return None
        return LockHandle.model_validate_json(data)

    def _replace_if_fenced(self, handle: LockHandle, new_value: str | None) -> bool:
        lock_key = self._lock_key(handle.target)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(lock_key)
                    data = pipe.get(lock_key)
                    if data is None:
                        pipe.unwatch()
                        return False
                    current = LockHandle.model_validate_json(data)
                    if current.fencing_token != handle.fencing_token:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    if new_value is None:
                        pipe.delete(lock_key)
                    else:
                        pipe.set(lock_key, new_value)
                    pipe.execute()
                    return True
                except self._watch_error:
                    continue

    async def update_lock(self, handle: LockHandle) -> bool:
        return self._replace_if_fenced(handle, handle.model_dump_json())

    async def delete_lock(self, handle: LockHandle) -> bool:
        return self._replace_if_fenced(handle, None)

    async def delete_expired_locks(self, now: datetime) -> list[LockHandle]:
        reclaimed: list[LockHandle] = []
        for key in self._client.scan_iter(match=f"{self._p}lock:*"):
            data = self._client.get(key)
            if data is None:
                continue
            handle = LockHandle.model_validate_json(data)
            if handle.is_expired(now) and self._replace_if_fenced(handle, None):
                reclaimed.append(handle)
        return reclaimed

    def close(self) -> None:
        self._client.close()
