# src/storage/base_blob_backend.py — v1
"""Abstract blob backend interface for the artifact store."""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseBlobBackend(ABC):
    """Unified interface for blob storage backends (local, s3)."""

    @property
    def encrypts_at_rest(self) -> bool:
        """True if the backend encrypts blobs itself (e.g. S3 SSE-KMS)."""
        return False

    @abstractmethod
    async def write(self, key: str, content: bytes) -> None:
        """Write bytes under key, replacing any existing blob."""

    @abstractmethod
    async def read(self, key: str) -> bytes:
        """Read bytes under key. Raises KeyError if missing."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """List keys starting with prefix, sorted."""
