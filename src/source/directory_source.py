# src/source/directory_source.py — v1
"""Build a Revision from a local directory (checkout, build output, ...)."""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path

from deploygate.core.models import Revision

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = [".git", ".git/*", "*/.git/*", ".terraform/*", "*/.terraform/*", "*.tfstate", "*.tfstate.*"]


class DirectorySource:
    """Snapshot every regular file under ``root`` into a Revision.

    Paths are stored relative to ``root`` with forward slashes. Symlinks are
    not followed. The revision id is the content digest unless ``revision_id``
    is given (e.g. a commit SHA).

    Args:
        root: Directory to snapshot.
        exclude: Glob patterns on relative paths to leave out.
    """

    def __init__(self, root: str | Path, exclude: list[str] | None = None) -> None:
        self._root = Path(root).expanduser().resolve()
        self._exclude = DEFAULT_EXCLUDES if exclude is None else exclude

    def _excluded(self, rel: str) -> bool:
        return any(fnmatch.fnmatch(rel, pattern) for pattern in self._exclude)

    def collect(self) -> dict[str, bytes]:
        """Read the files to include, keyed by relative path."""
        if not self._root.is_dir():
            raise FileNotFoundError(f"Source directory not found: {self._root}")

        files: dict[str, bytes] = {}
        for path in sorted(self._root.rglob("*")):
            if path.is_symlink() or not path.is_file():
                continue
            rel = path.relative_to(self._root).as_posix()
            if self._excluded(rel):
                continue
            files[rel] = path.read_bytes()
        return files

    def revision(self, target: str, revision_id: str | None = None) -> Revision:
        """Snapshot the directory as a revision for ``target``."""
        files = self.collect()
        revision = Revision.create(
            target=target,
            files=files,
            revision_id=revision_id,
            source_ref=str(self._root),
        )
        logger.info("Collected %d files from %s as %s", len(files), self._root, revision.revision_id)
        return revision
