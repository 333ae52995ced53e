"""
Credential encryption at rest.

Access tokens are stored as ``ivhex:taghex:cipherhex`` (AES-256-GCM, 12-byte
IV) and decrypted just-in-time; plaintext tokens are never persisted.
"""
from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .settings import get_settings

IV_BYTES = 12
TAG_BYTES = 16


class CredentialError(Exception):
    """Raised when a stored credential cannot be decrypted."""


def _key() -> bytes:
    key = get_settings().encryption_key
    if not key:
        raise CredentialError("ENCRYPTION_KEY is not set")
    return key.ljust(32, "0")[:32].encode("utf-8")


def encrypt(value: str) -> str:
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(_key()).encrypt(iv, value.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt(payload: str) -> str:
    parts = (payload or "").split(":")
    if len(parts) != 3 or not all(parts):
        raise CredentialError("Invalid encrypted payload")
    iv_hex, tag_hex, cipher_hex = parts
    try:
        iv = bytes.fromhex(iv_hex)
        sealed = bytes.fromhex(cipher_hex) + bytes.fromhex(tag_hex)
        return AESGCM(_key()).decrypt(iv, sealed, None).decode("utf-8")
    except (ValueError, InvalidTag) as exc:
        raise CredentialError("Encrypted payload could not be decrypted") from exc


def get_stored_access_token(encrypted: str | None) -> str:
    """Decrypt an integration's stored access token."""
    if not encrypted:
        raise CredentialError("No stored access token")
    return decrypt(encrypted)
