# src/state/lock.py — v1
"""StateLock: lease-based mutual exclusion over a target's deployment state.

At most one run holds a target's lock at a time. Leases that lapse without
renewal stay in place until reclaim_expired() removes them, which lets a
recovery process make progress after a crashed holder. Every acquisition
carries a fencing token so a holder whose lease was reclaimed can no longer
release or renew.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

from deploygate.core.authorizer import BaseAuthorizer
from deploygate.core.errors import ConflictError
from deploygate.core.models import LockHandle, utcnow
from deploygate.state.base_state_store import BaseStateStore

logger = logging.getLogger(__name__)


class StateLock:
    """Acquire, renew and release per-target state locks.

    Args:
        store: State store holding lock entries.
        authorizer: Optional capability check on acquisition.
        clock: Injectable time source (tests).
    """

    def __init__(
        self,
        store: BaseStateStore,
        authorizer: BaseAuthorizer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._authorizer = authorizer
        self._clock = clock

    async def acquire(self, target: str, run_id: int, lease: timedelta) -> LockHandle:
        """Take the lock for ``target`` on behalf of ``run_id``.

        Raises:
            ConflictError: If a live lease is held by any run.
            AuthorizationError: If the authorizer refuses the run.
        """
        if self._authorizer is not None:
            self._authorizer.require_lock(run_id, target)

        now = self._clock()
        handle = await self._store.try_acquire_lock(target, run_id, now, now + lease)
        if handle is None:
            holder = await self._store.get_lock(target)
            holder_id = holder.holder_run_id if holder else None
            raise ConflictError(
                f"State lock for '{target}' is held by run {holder_id}",
                {
                    "target": target,
                    "holder_run_id": holder_id,
                    "lease_expires_at": holder.lease_expires_at.isoformat() if holder else None,
                },
            )

        logger.info(
            "Run %d acquired lock on %s (fencing=%d, lease until %s)",
            run_id, target, handle.fencing_token, handle.lease_expires_at.isoformat(),
        )
        return handle

    async def release(self, handle: LockHandle) -> None:
        """Release a held lock.

        Raises:
            ConflictError: If the lease was reclaimed and re-acquired meanwhile.
        """
        if not await self._store.delete_lock(handle):
            raise ConflictError(
                f"Run {handle.holder_run_id} no longer holds the lock on '{handle.target}'",
                {"target": handle.target, "fencing_token": handle.fencing_token},
            )
        logger.info("Run %d released lock on %s", handle.holder_run_id, handle.target)

    async def renew(self, handle: LockHandle, lease: timedelta) -> LockHandle:
        """Extend the lease of a held lock and return the updated handle.

        Raises:
            ConflictError: If the lock is no longer held under this handle.
        """
        renewed = handle.renewed(lease, self._clock())
        if not await self._store.update_lock(renewed):
            raise ConflictError(
                f"Cannot renew lock on '{handle.target}': lease lost",
                {"target": handle.target, "fencing_token": handle.fencing_token},
            )
        logger.debug("Renewed lock on %s until %s", handle.target, renewed.lease_expires_at)
        return renewed

    async def reclaim_expired(self) -> list[LockHandle]:
        """Remove lapsed leases (crash recovery). Returns the reclaimed entries."""
        reclaimed = await self._store.delete_expired_locks(self._clock())
        for handle in reclaimed:
            logger.warning(
                "Reclaimed expired lock on %s from run %d (expired %s)",
                handle.target, handle.holder_run_id, handle.lease_expires_at.isoformat(),
            )
        return reclaimed

    async def holder(self, target: str) -> LockHandle | None:
        """Current live lock for target, or None if free or lapsed."""
        handle = await self._store.get_lock(target)
        if handle is None or handle.is_expired(self._clock()):
            return None
        return handle

    @asynccontextmanager
    async def held(
        self, target: str, run_id: int, lease: timedelta
    ) -> AsyncIterator[LockHandle]:
        """Hold the lock for the duration of the block; always release on exit."""
        handle = await self.acquire(target, run_id, lease)
        try:
            yield handle
        finally:
            try:
                await self.release(handle)
            except ConflictError:
                logger.error(
                    "Lock on %s was lost while run %d held it", target, run_id
                )
