# src/executor/process.py — v1
"""Isolated command execution.

Each stage gets a fresh temporary working directory holding only the
revision's files, and a scrubbed environment built from an explicit
pass-through list. Commands are bounded by a timeout and killed on expiry.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Iterable, Mapping, Sequence

from deploygate.core.errors import ExecutionError
from deploygate.core.models import Revision, is_safe_revision_path

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: list[str]
    exit_code: int | None
    output: bytes
    duration_ms: int
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def transcript(self) -> bytes:
        """Header line plus combined stdout/stderr, for the raw log."""
        status = "timeout" if self.timed_out else f"exit={self.exit_code}"
        header = f"$ {' '.join(self.argv)}  [{status}, {self.duration_ms}ms]\n"
        return header.encode("utf-8") + self.output


def _safe_relative(path: str) -> PurePosixPath:
    if not is_safe_revision_path(path):
        raise ExecutionError(
            f"Refusing unsafe revision path: {path!r}", reason="UnsafePath", retryable=False
        )
    return PurePosixPath(path)


@asynccontextmanager
async def materialize(revision: Revision) -> AsyncIterator[Path]:
    """Write the revision's files into a fresh temp dir, removed on exit."""
    with tempfile.TemporaryDirectory(prefix="deploygate-") as tmp:
        root = Path(tmp)
        for path, content in revision.files.items():
            dest = root.joinpath(*_safe_relative(path).parts)
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(content)
        logger.debug("Materialized %d files for %s in %s", len(revision.files), revision.revision_id, root)
        yield root


def build_env(passthrough: Iterable[str], extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Scrubbed environment: only whitelisted variables plus explicit extras."""
    env = {name: os.environ[name] for name in passthrough if name in os.environ}
    env.update(extra or {})
    return env


async def run_command(
    argv: Sequence[str],
    cwd: Path,
    env: Mapping[str, str],
    timeout_s: float,
) -> CommandResult:
    """Run one command, capturing combined output.

    Raises:
        ExecutionError: If the process cannot be spawned.
    """
    if not argv:
        raise ExecutionError("Empty command", reason="EmptyCommand", retryable=False)

    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise ExecutionError(
            f"Cannot start {argv[0]!r}: {exc}", reason="SpawnFailed"
        ) from exc

    try:
        output, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.error("Command %s timed out after %.1fs", argv[0], timeout_s)
        proc.kill()
        output, _ = await proc.communicate()
        return CommandResult(
            argv=list(argv),
            exit_code=None,
            output=output or b"",
            duration_ms=int((time.monotonic() - start) * 1000),
            timed_out=True,
        )
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    return CommandResult(
        argv=list(argv),
        exit_code=proc.returncode,
        output=output or b"",
        duration_ms=int((time.monotonic() - start) * 1000),
    )
