# src/storage/kms_cipher.py — v1
"""AWS KMS envelope encryption for artifacts (ARTIFACT_CIPHER=kms).

Every blob gets a fresh AES-256 data key from ``kms.generate_data_key``.
The blob is sealed with AES-GCM using the artifact address as associated
data, and only the KMS-wrapped data key is stored next to it. Unwrapping
goes back through KMS, so key material never rests on disk.

Requires 'boto3' and 'cryptography' packages: pip install 'deploygate[kms]'.

Envelope layout::

    b"DGK1" | len(wrapped key) (2 bytes, big endian) | wrapped key | nonce (12) | sealed
"""

from __future__ import annotations

import logging
import os
from typing import Any

from deploygate.config.settings import ConfigurationError
from deploygate.core.errors import IntegrityError
from deploygate.storage.cipher import BaseCipher

logger = logging.getLogger(__name__)

_MAGIC = b"DGK1"
_NONCE_BYTES = 12
_CONTEXT_KEY = "deploygate:artifact"


class KmsEnvelopeCipher(BaseCipher):
    """Seal blobs with per-blob data keys issued by a KMS key."""

    def __init__(
        self,
        key_id: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any = None,
    ) -> None:
        """Initialize the cipher.

        Args:
            key_id: KMS key id, ARN or alias wrapping the data keys.
            region: AWS region (optional, uses boto3 default if not set).
            endpoint_url: Custom KMS endpoint (LocalStack and similar).
            client: Pre-built boto3 KMS client (tests).
        """
        try:
            import boto3
            from botocore.exceptions import ClientError
            from cryptography.exceptions import InvalidTag
            from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        except ImportError as e:
            raise ImportError(
                "boto3 and cryptography packages required for the KMS cipher: "
                "pip install 'deploygate[kms]'"
            ) from e

        if not key_id:
            raise ConfigurationError("ARTIFACT_CIPHER=kms requires ARTIFACT_KMS_KEY_ID")

        if client is None:
            kwargs: dict[str, Any] = {}
            if region:
                kwargs["region_name"] = region
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("kms", **kwargs)

        self._kms = client
        self._key_id = key_id
        self._aesgcm = AESGCM
        self._invalid_tag = InvalidTag
        self._client_error = ClientError

    @property
    def key_id(self) -> str:
        return self._key_id

    def encrypt(self, plaintext: bytes, context: str) -> bytes:
        data_key = self._kms.generate_data_key(
            KeyId=self._key_id,
            KeySpec="AES_256",
            EncryptionContext={_CONTEXT_KEY: context},
        )
        wrapped = data_key["CiphertextBlob"]
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aesgcm(data_key["Plaintext"]).encrypt(
            nonce, plaintext, context.encode("utf-8")
        )
        return _MAGIC + len(wrapped).to_bytes(2, "big") + wrapped + nonce + sealed

    def decrypt(self, ciphertext: bytes, context: str) -> bytes:
        wrapped, nonce, sealed = self._split(ciphertext, context)
        try:
            response = self._kms.decrypt(
                CiphertextBlob=wrapped,
                KeyId=self._key_id,
                EncryptionContext={_CONTEXT_KEY: context},
            )
        except self._client_error as e:
            if e.response.get("Error", {}).get("Code") != "InvalidCiphertextException":
                raise
            raise IntegrityError(
                f"KMS refused the data key of {context}", {"address": context}
            ) from e

        try:
            return self._aesgcm(response["Plaintext"]).decrypt(
                nonce, sealed, context.encode("utf-8")
            )
        except self._invalid_tag as e:
            raise IntegrityError(
                f"Artifact {context} failed authentication", {"address": context}
            ) from e

    @staticmethod
    def _split(ciphertext: bytes, context: str) -> tuple[bytes, bytes, bytes]:
        header = len(_MAGIC) + 2
        if len(ciphertext) < header or not ciphertext.startswith(_MAGIC):
            raise IntegrityError(f"Artifact {context} is not a KMS envelope", {"address": context})
        wrapped_len = int.from_bytes(ciphertext[len(_MAGIC):header], "big")
        nonce_at = header + wrapped_len
        if len(ciphertext) < nonce_at + _NONCE_BYTES:
            raise IntegrityError(f"Artifact {context} envelope is truncated", {"address": context})
        return (
            ciphertext[header:nonce_at],
            ciphertext[nonce_at:nonce_at + _NONCE_BYTES],
            ciphertext[nonce_at + _NONCE_BYTES:],
        )
