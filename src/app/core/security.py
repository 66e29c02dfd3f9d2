"""Credential encryption at rest.

Tracker access tokens are stored only as Fernet ciphertext (AES-128-CBC +
HMAC-SHA256, URL-safe base64, fits a TEXT column). The Fernet key is derived
from the ROADMAP_SECRET_KEY passphrase with SHA-256, so any non-empty
passphrase works and rotating it invalidates every stored credential.

Plaintext tokens are returned to callers for the duration of one tracker
call and are never logged.
"""

from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from src.app.config import get_settings

logger = logging.getLogger(__name__)


class SecretStore:
    """Encrypt and decrypt opaque secrets with a passphrase-derived key.

    Args:
        passphrase: Key material. Empty means the store is unconfigured and
            every operation raises RuntimeError.
    """

    def __init__(self, passphrase: str) -> None:
        self._fernet: Fernet | None = None
        if passphrase:
            digest = hashlib.sha256(passphrase.encode("utf-8")).digest()
            self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    @property
    def configured(self) -> bool:
        return self._fernet is not None

    def _require(self) -> Fernet:
        # Fail loud rather than silently storing plaintext secrets
        if self._fernet is None:
            raise RuntimeError("ROADMAP_SECRET_KEY is required to store datasource secrets.")
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret; output is URL-safe base64 text."""
        return self._require().encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value produced by encrypt().

        Raises:
            RuntimeError: The store has no passphrase.
            cryptography.fernet.InvalidToken: Tampered ciphertext, or it was
                encrypted under a different passphrase.
        """
        return self._require().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


def get_secret_store() -> SecretStore:
    """SecretStore keyed by the configured ROADMAP_SECRET_KEY."""
    settings = get_settings()
    if not settings.ROADMAP_SECRET_KEY:
        logger.warning("ROADMAP_SECRET_KEY is not set; tracker credentials cannot be stored")
    return SecretStore(settings.ROADMAP_SECRET_KEY)


__all__ = [
    "InvalidToken",
    "SecretStore",
    "get_secret_store",
]
