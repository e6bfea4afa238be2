# src/core/fingerprint.py — v1
"""Content digests for revisions, blobs, verdicts and desired states.

All digests are SHA-256. Blob addresses carry a ``sha256:`` scheme prefix so
stored ids are self-describing.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

ADDRESS_PREFIX = "sha256:"


def content_address(data: bytes) -> str:
    """Content address of a blob: ``sha256:<hex>``."""
    return ADDRESS_PREFIX + hashlib.sha256(data).hexdigest()


def is_content_address(value: str) -> bool:
    """Check that value looks like an address produced by content_address()."""
    if not value.startswith(ADDRESS_PREFIX):
        return False
    digest = value[len(ADDRESS_PREFIX):]
    return len(digest) == 64 and all(c in "0123456789abcdef" for c in digest)


def revision_digest(files: Mapping[str, bytes]) -> str:
    """Digest over an ordered file set.

    Paths are hashed in sorted order with length framing so that moving bytes
    between two files always changes the digest.
    """
    h = hashlib.sha256()
    for path in sorted(files):
        encoded_path = path.encode("utf-8")
        content = files[path]
        h.update(len(encoded_path).to_bytes(8, "big"))
        h.update(encoded_path)
        h.update(len(content).to_bytes(8, "big"))
        h.update(content)
    return h.hexdigest()


def canonical_digest(payload: Any) -> str:
    """Digest of a JSON-serialisable payload in canonical form."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
