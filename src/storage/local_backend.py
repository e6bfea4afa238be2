# src/storage/local_backend.py — v1
"""Local filesystem blob backend (default)."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from deploygate.storage.base_blob_backend import BaseBlobBackend


class LocalBlobBackend(BaseBlobBackend):
    """Store blobs as files under a root directory.

    Writes go to a temporary file in the destination directory and are
    renamed into place, so readers never observe a partial blob.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError(f"Key escapes backend root: {key!r}")
        return path

    async def write(self, key: str, content: bytes) -> None:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def read(self, key: str) -> bytes:
        path = self._resolve(key)
        if not path.is_file():
            raise KeyError(key)
        return path.read_bytes()

    async def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    async def list_keys(self, prefix: str = "") -> list[str]:
        keys = [
            p.relative_to(self._root).as_posix()
            for p in self._root.rglob("*")
            if p.is_file() and not p.name.startswith(".")
        ]
        return sorted(k for k in keys if k.startswith(prefix))
