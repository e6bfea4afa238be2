# src/storage/backend_factory.py — v1
"""Factory: instantiate the artifact store from configuration."""

from __future__ import annotations

from deploygate.config.settings import Settings
from deploygate.storage.artifact_store import ArtifactStore
from deploygate.storage.base_blob_backend import BaseBlobBackend
from deploygate.storage.cipher import BaseCipher, load_cipher
from deploygate.storage.local_backend import LocalBlobBackend


def create_backend(settings: Settings) -> BaseBlobBackend:
    """Create the blob backend selected by ARTIFACT_BACKEND.

    Raises:
        ValueError: If the backend type is not supported.
    """
    if settings.artifact_backend == "local":
        return LocalBlobBackend(settings.artifact_root)

    if settings.artifact_backend == "s3":
        from deploygate.storage.s3_backend import S3BlobBackend

        return S3BlobBackend(
            bucket=settings.artifact_s3_bucket,
            prefix=settings.artifact_s3_prefix,
            region=settings.artifact_s3_region or None,
            endpoint_url=settings.artifact_s3_endpoint_url or None,
            kms_key_id=settings.artifact_kms_key_id or None,
        )

    raise ValueError(f"Unsupported artifact backend: {settings.artifact_backend!r}")


def create_artifact_store(
    settings: Settings, cipher: BaseCipher | None = None
) -> ArtifactStore:
    """Create the artifact store, loading ARTIFACT_CIPHER when no cipher is given.

    ``ARTIFACT_CIPHER=kms`` selects KMS envelope encryption with
    ARTIFACT_KMS_KEY_ID; any other value is a dotted BaseCipher class path.

    Raises:
        ConfigurationError: If the resulting store would not encrypt at rest.
    """
    if cipher is None and settings.artifact_cipher == "kms":
        from deploygate.storage.kms_cipher import KmsEnvelopeCipher

        cipher = KmsEnvelopeCipher(
            key_id=settings.artifact_kms_key_id,
            region=settings.artifact_kms_region or settings.artifact_s3_region or None,
        )
    elif cipher is None and settings.artifact_cipher:
        cipher = load_cipher(settings.artifact_cipher)
    return ArtifactStore(create_backend(settings), cipher=cipher)
