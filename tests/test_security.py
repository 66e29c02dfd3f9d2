"""Credential encryption tests.

Tests the passphrase-keyed SecretStore that keeps tracker access tokens
encrypted at rest.
"""

from __future__ import annotations

import pytest

from src.app.config import get_settings
from src.app.core.security import InvalidToken, SecretStore, get_secret_store


# ── Round Trip ────────────────────────────────────────────────────────────────


def test_encrypt_then_decrypt_returns_plaintext():
    """A token survives an encrypt/decrypt cycle."""
    secrets = SecretStore("passphrase-one")
    ciphertext = secrets.encrypt("pat-123")
    assert ciphertext != "pat-123"
    assert "pat-123" not in ciphertext
    assert secrets.decrypt(ciphertext) == "pat-123"


def test_ciphertext_is_not_deterministic():
    """Two encryptions of the same token differ (random IV)."""
    secrets = SecretStore("passphrase-one")
    assert secrets.encrypt("pat-123") != secrets.encrypt("pat-123")


def test_any_passphrase_length_works():
    """Short and long passphrases both derive a usable key."""
    for passphrase in ("x", "a much longer passphrase with spaces " * 4):
        secrets = SecretStore(passphrase)
        assert secrets.decrypt(secrets.encrypt("token")) == "token"


# ── Failure Modes ─────────────────────────────────────────────────────────────


def test_wrong_passphrase_cannot_decrypt():
    """Rotating the passphrase invalidates stored ciphertext."""
    ciphertext = SecretStore("passphrase-one").encrypt("pat-123")
    with pytest.raises(InvalidToken):
        SecretStore("passphrase-two").decrypt(ciphertext)


def test_tampered_ciphertext_rejected():
    """Flipping a character breaks the HMAC check."""
    secrets = SecretStore("passphrase-one")
    ciphertext = secrets.encrypt("pat-123")
    tampered = ciphertext[:-5] + ("A" if ciphertext[-5] != "A" else "B") + ciphertext[-4:]
    with pytest.raises(InvalidToken):
        secrets.decrypt(tampered)


def test_unconfigured_store_refuses_to_encrypt():
    """Without a passphrase nothing is stored in the clear."""
    secrets = SecretStore("")
    assert secrets.configured is False
    with pytest.raises(RuntimeError, match="ROADMAP_SECRET_KEY"):
        secrets.encrypt("pat-123")
    with pytest.raises(RuntimeError):
        secrets.decrypt("anything")


def test_get_secret_store_uses_settings(monkeypatch):
    """get_secret_store() is keyed by ROADMAP_SECRET_KEY."""
    monkeypatch.setenv("ROADMAP_SECRET_KEY", "from-env")
    get_settings.cache_clear()
    try:
        store = get_secret_store()
        assert store.configured is True
        assert SecretStore("from-env").decrypt(store.encrypt("pat-123")) == "pat-123"
    finally:
        get_settings.cache_clear()
