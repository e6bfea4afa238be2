# src/storage/artifact_store.py — v1
"""Content-addressed, encrypted-at-rest artifact store.

Ids are ``sha256:<hex>`` of the plaintext, giving deduplication and tamper
evidence: every read is re-hashed against its id. Encryption is delegated
either to the backend (server-side KMS) or to an injected BaseCipher.
"""

from __future__ import annotations

import logging

from deploygate.config.settings import ConfigurationError
from deploygate.core.errors import IntegrityError
from deploygate.core.fingerprint import ADDRESS_PREFIX, content_address, is_content_address
from deploygate.core.models import Revision
from deploygate.storage.base_blob_backend import BaseBlobBackend
from deploygate.storage.cipher import BaseCipher

logger = logging.getLogger(__name__)

_BLOB_PREFIX = "blobs/"


def _blob_key(address: str) -> str:
    digest = address[len(ADDRESS_PREFIX):]
    return f"{_BLOB_PREFIX}{digest[:2]}/{digest}"


class ArtifactStore:
    """Versioned blob storage for revision snapshots, logs and build outputs.

    Args:
        backend: Blob backend (local filesystem or S3).
        cipher: Client-side cipher from the key-management collaborator.
            Required unless the backend encrypts at rest itself.

    Raises:
        ConfigurationError: If blobs would be stored unencrypted.
    """

    def __init__(self, backend: BaseBlobBackend, cipher: BaseCipher | None = None) -> None:
        if cipher is None and not backend.encrypts_at_rest:
            raise ConfigurationError(
                f"{type(backend).__name__} does not encrypt at rest and no cipher was provided"
            )
        self._backend = backend
        self._cipher = cipher

    async def put(self, data: bytes) -> str:
        """Store bytes and return their content address. Idempotent."""
        address = content_address(data)
        key = _blob_key(address)
        if await self._backend.exists(key):
            logger.debug("Artifact %s already stored", address)
            return address

        payload = data
        if self._cipher is not None:
            payload = self._cipher.encrypt(data, address)
        await self._backend.write(key, payload)
        logger.debug("Stored artifact %s (%d bytes)", address, len(data))
        return address

    async def get(self, address: str) -> bytes:
        """Fetch and verify bytes by content address.

        Raises:
            ValueError: If address is not a content address.
            KeyError: If nothing is stored under address.
            IntegrityError: If stored content does not hash to address.
        """
        if not is_content_address(address):
            raise ValueError(f"Not a content address: {address!r}")

        payload = await self._backend.read(_blob_key(address))
        data = payload
        if self._cipher is not None:
            data = self._cipher.decrypt(payload, address)

        actual = content_address(data)
        if actual != address:
            raise IntegrityError(
                f"Artifact {address} failed verification",
                {"expected": address, "actual": actual},
            )
        return data

    async def exists(self, address: str) -> bool:
        if not is_content_address(address):
            return False
        return await self._backend.exists(_blob_key(address))

    async def put_revision(self, revision: Revision) -> str:
        """Persist a revision snapshot; returns its bundle address."""
        return await self.put(revision.to_bundle())

    async def get_revision(self, address: str) -> Revision:
        """Load a revision snapshot stored with put_revision().

        Raises:
            IntegrityError: The blob is not a valid revision bundle.
        """
        data = await self.get(address)
        try:
            return Revision.from_bundle(data)
        except (ValueError, KeyError) as e:
            raise IntegrityError(
                f"Artifact {address} is not a valid revision: {e}", {"address": address}
            ) from e
