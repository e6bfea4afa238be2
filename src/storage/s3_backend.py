# src/storage/s3_backend.py — v1
"""S3-compatible blob backend (ARTIFACT_BACKEND=s3).

Supports AWS S3, MinIO, and other S3-compatible storage.
Requires 'boto3' package: pip install boto3.
With a KMS key id every object is written with SSE-KMS, so the key material
never leaves the key-management service.
"""

from __future__ import annotations

import logging
from typing import Any

from deploygate.storage.base_blob_backend import BaseBlobBackend

logger = logging.getLogger(__name__)


class S3BlobBackend(BaseBlobBackend):
    """Store blobs as objects in an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "deploygate/",
        region: str | None = None,
        endpoint_url: str | None = None,
        kms_key_id: str | None = None,
        client: Any = None,
    ) -> None:
        """Initialize S3 backend.

        Args:
            bucket: S3 bucket name.
            prefix: Key prefix for all objects (e.g. "deploygate/").
            region: AWS region (optional, uses boto3 default if not set).
            endpoint_url: Custom endpoint for MinIO/compatible storage.
            kms_key_id: KMS key for server-side encryption (SSE-KMS).
            client: Pre-built boto3 S3 client (tests).
        """
        try:
            import boto3
            from botocore.exceptions import ClientError
        except ImportError as e:
            raise ImportError(
                "boto3 package required for S3 backend: pip install boto3"
            ) from e

        if client is None:
            kwargs: dict[str, Any] = {}
            if region:
                kwargs["region_name"] = region
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **kwargs)

        self._s3 = client
        self._client_error = ClientError
        self._bucket = bucket
        self._prefix = prefix.rstrip("/") + "/" if prefix else ""
        self._kms_key_id = kms_key_id

    @property
    def encrypts_at_rest(self) -> bool:
        return bool(self._kms_key_id)

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def write(self, key: str, content: bytes) -> None:
        full_key = self._full_key(key)
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Key": full_key, "Body": content}
        if self._kms_key_id:
            kwargs["ServerSideEncryption"] = "aws:kms"
            kwargs["SSEKMSKeyId"] = self._kms_key_id
        self._s3.put_object(**kwargs)
        logger.debug("S3 write: s3://%s/%s (%d bytes)", self._bucket, full_key, len(content))

    async def read(self, key: str) -> bytes:
        full_key = self._full_key(key)
        try:
            response = self._s3.get_object(Bucket=self._bucket, Key=full_key)
        except self._client_error as e:
            if _error_code(e) in _MISSING_CODES:
                raise KeyError(key) from e
            raise
        return response["Body"].read()

    async def exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self._bucket, Key=self._full_key(key))
        except self._client_error as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise
        return True

    async def list_keys(self, prefix: str = "") -> list[str]:
        full_prefix = self._full_key(prefix)
        paginator = self._s3.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=full_prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"][len(self._prefix):])
        return sorted(keys)


_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))
