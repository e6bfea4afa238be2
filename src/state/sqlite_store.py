# src/state/sqlite_store.py — v1
"""SQLite-based state store (STATE_BACKEND=sqlite).

Uses stdlib sqlite3, no external dependency. Lock and version updates run
inside ``BEGIN IMMEDIATE`` transactions so concurrent controller processes
sharing the same database file serialise on them.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from deploygate.core.models import (
    ApprovalToken,
    ApprovalTokenStatus,
    DeploymentState,
    LockHandle,
    PipelineRun,
)
from deploygate.state.base_state_store import BaseStateStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS run_ids (
    run_id INTEGER PRIMARY KEY AUTOINCREMENT
);
CREATE TABLE IF NOT EXISTS runs (
    run_id INTEGER PRIMARY KEY,
    target TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_runs_target ON runs(target, run_id);
CREATE TABLE IF NOT EXISTS deployment_states (
    target TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (target, version)
);
CREATE TABLE IF NOT EXISTS approval_tokens (
    token TEXT PRIMARY KEY,
    run_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS state_locks (
    target TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    fencing_token INTEGER NOT NULL,
    lease_expires_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS lock_fencing (
    target TEXT PRIMARY KEY,
    counter INTEGER NOT NULL
);
"""


class SqliteStateStore(BaseStateStore):
    """Durable state store backed by a single SQLite file."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; multi-statement updates use explicit transactions.
        self._conn = sqlite3.connect(
            str(self._db_path), isolation_level=None, check_same_thread=False
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.executescript(_SCHEMA)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    # --- Runs ---

    async def next_run_id(self) -> int:
        cursor = self._conn.execute("INSERT INTO run_ids DEFAULT VALUES")
        return int(cursor.lastrowid)

    async def save_run(self, run: PipelineRun) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO runs (run_id, target, status, data, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                run.run_id,
                run.target,
                run.status.value,
                run.model_dump_json(),
                run.updated_at.isoformat(),
            ),
        )

    async def get_run(self, run_id: int) -> PipelineRun | None:
        row = self._conn.execute(
            "SELECT data FROM runs WHERE run_id = ?", (run_id,)
        ).fetchone()
        if row is None:
            return None
        return PipelineRun.model_validate_json(row[0])

    async def list_runs(self, target: str | None = None) -> list[PipelineRun]:
        if target is None:
            rows = self._conn.execute("SELECT data FROM runs ORDER BY run_id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT data FROM runs WHERE target = ? ORDER BY run_id", (target,)
            ).fetchall()
        return [PipelineRun.model_validate_json(row[0]) for row in rows]

    # --- Deployment state ---

    def _current_state(self, target: str) -> DeploymentState:
        row = self._conn.execute(
            "SELECT data FROM deployment_states WHERE target = ? ORDER BY version DESC LIMIT 1",
            (target,),
        ).fetchone()
        if row is None:
            return DeploymentState.initial(target)
        return DeploymentState.model_validate_json(row[0])

    async def get_state(self, target: str) -> DeploymentState:
        return self._current_state(target)

    async def compare_and_set_state(
        self, state: DeploymentState, expected_version: int
    ) -> bool:
        if state.version != expected_version + 1:
            raise ValueError(
                f"New version {state.version} does not follow expected {expected_version}"
            )
        with self._transaction() as conn:
            current = self._current_state(state.target)
            if current.version != expected_version:
                logger.warning(
                    "State CAS rejected for %s: expected v%d, found v%d",
                    state.target, expected_version, current.version,
                )
                return False
            conn.execute(
                "INSERT INTO deployment_states (target, version, data) VALUES (?, ?, ?)",
                (state.target, state.version, state.model_dump_json()),
            )
        return True

    async def state_history(self, target: str) -> list[DeploymentState]:
        rows = self._conn.execute(
            "SELECT data FROM deployment_states WHERE target = ? ORDER BY version",
            (target,),
        ).fetchall()
        return [DeploymentState.model_validate_json(row[0]) for row in rows]

    # --- Approval tokens ---

    async def save_token(self, token: ApprovalToken) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO approval_tokens (token, run_id, status, data)
               VALUES (?, ?, ?, ?)""",
            (token.token, token.run_id, token.status.value, token.model_dump_json()),
        )

    async def compare_and_set_token(
        self, token: ApprovalToken, expected_status: ApprovalTokenStatus
    ) -> bool:
        cursor = self._conn.execute(
            """UPDATE approval_tokens SET status = ?, data = ?
               WHERE token = ? AND status = ?""",
            (token.status.value, token.model_dump_json(), token.token, expected_status.value),
        )
        return cursor.rowcount == 1

    async def get_token(self, token_id: str) -> ApprovalToken | None:
        row = self._conn.execute(
            "SELECT data FROM approval_tokens WHERE token = ?", (token_id,)
        ).fetchone()
        if row is None:
            return None
        return ApprovalToken.model_validate_json(row[0])

    async def list_tokens(
        self, status: ApprovalTokenStatus | None = None
    ) -> list[ApprovalToken]:
        if status is None:
            rows = self._conn.execute(
                "SELECT data FROM approval_tokens ORDER BY run_id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT data FROM approval_tokens WHERE status = ? ORDER BY run_id",
                (status.value,),
            ).fetchall()
        return [ApprovalToken.model_validate_json(row[0]) for row in rows]

    # --- Locks ---

    def _read_lock(self, target: str) -> LockHandle | None:
        row = self._conn.execute(
            "SELECT data FROM state_locks WHERE target = ?", (target,)
        ).fetchone()
        if row is None:
            return None
        return LockHandle.model_validate_json(row[0])

    async def try_acquire_lock(
        self,
        target: str,
        run_id: int,
        now: datetime,
        lease_expires_at: datetime,
    ) -> LockHandle | None:
        with self._transaction() as conn:
            current = self._read_lock(target)
            if current is not None and not current.is_expired(now):
                return None

            row = conn.execute(
                "SELECT counter FROM lock_fencing WHERE target = ?", (target,)
            ).fetchone()
            fencing = (row[0] if row else 0) + 1
            conn.execute(
                "INSERT OR REPLACE INTO lock_fencing (target, counter) VALUES (?, ?)",
                (target, fencing),
            )

            handle = LockHandle(
                target=target,
                holder_run_id=run_id,
                acquired_at=now,
                lease_expires_at=lease_expires_at,
                fencing_token=fencing,
            )
            conn.execute(
                """INSERT OR REPLACE INTO state_locks
                   (target, data, fencing_token, lease_expires_at) VALUES (?, ?, ?, ?)""",
                (target, handle.model_dump_json(), fencing, lease_expires_at.isoformat()),
            )
        return handle

    async def get_lock(self, target: str) -> LockHandle | None:
        return self._read_lock(target)

    async def update_lock(self, handle: LockHandle) -> bool:
        cursor = self._conn.execute(
            """UPDATE state_locks SET data = ?, lease_expires_at = ?
               WHERE target = ? AND fencing_token = ?""",
            (
                handle.model_dump_json(),
                handle.lease_expires_at.isoformat(),
                handle.target,
                handle.fencing_token,
            ),
        )
        return cursor.rowcount == 1

    async def delete_lock(self, handle: LockHandle) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM state_locks WHERE target = ? AND fencing_token = ?",
            (handle.target, handle.fencing_token),
        )
        return cursor.rowcount == 1

    async def delete_expired_locks(self, now: datetime) -> list[LockHandle]:
        reclaimed: list[LockHandle] = []
        with self._transaction() as conn:
            rows = conn.execute("SELECT data FROM state_locks").fetchall()
            for row in rows:
                handle = LockHandle.model_validate_json(row[0])
                if handle.is_expired(now):
                    conn.execute(
                        "DELETE FROM state_locks WHERE target = ? AND fencing_token = ?",
                        (handle.target, handle.fencing_token),
                    )
                    reclaimed.append(handle)
        return reclaimed

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
