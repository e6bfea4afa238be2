# src/storage/cipher.py — v1
"""Client-side encryption seam for the artifact store.

The store never holds key material: a BaseCipher is supplied by the external
key-management collaborator and is loaded from a dotted class path.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod

from deploygate.config.settings import ConfigurationError


class BaseCipher(ABC):
    """Encrypts blobs before they reach a backend."""

    @property
    @abstractmethod
    def key_id(self) -> str:
        """Identifier of the key in use (recorded, never the key itself)."""

    @abstractmethod
    def encrypt(self, plaintext: bytes, context: str) -> bytes:
        """Encrypt ``plaintext``; ``context`` is authenticated associated data."""

    @abstractmethod
    def decrypt(self, ciphertext: bytes, context: str) -> bytes:
        """Decrypt data produced by encrypt() with the same context."""


def load_cipher(class_path: str) -> BaseCipher:
    """Import and instantiate a cipher from a dotted class path."""
    module_path, _, class_name = class_path.rpartition(".")
    if not module_path:
        raise ConfigurationError(f"Invalid cipher class path: {class_path!r}")
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import cipher module {module_path}: {exc}") from exc

    cls = getattr(module, class_name, None)
    if not isinstance(cls, type) or not issubclass(cls, BaseCipher):
        raise ConfigurationError(f"{class_path} is not a BaseCipher subclass")
    return cls()
