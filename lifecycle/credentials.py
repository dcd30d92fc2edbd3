"""
Encryption of DNS provider credentials at rest.

Credential dicts (api tokens, access key pairs) are serialized to JSON and
sealed with AES-GCM.  Stored form: base64(nonce || ciphertext+tag), with a
random 12-byte nonce per seal.  The key is configured as hex
(ENCRYPTION_KEY, 16/24/32 bytes).
"""
from __future__ import annotations

import base64
import binascii
import json
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from lifecycle.errors import ProviderError

_NONCE_SIZE = 12


def generate_key(num_bytes: int = 32) -> str:
    """Return a fresh random key, hex encoded."""
    return secrets.token_hex(num_bytes)


def _aes(key_hex: str) -> AESGCM:
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as exc:
        raise ProviderError(f"encryption key is not valid hex: {exc}") from exc
    if len(key) not in (16, 24, 32):
        raise ProviderError(f"encryption key must be 16, 24 or 32 bytes, got {len(key)}")
    return AESGCM(key)


def encrypt_credentials(credentials: dict, key_hex: str) -> str:
    nonce = os.urandom(_NONCE_SIZE)
    sealed = _aes(key_hex).encrypt(nonce, json.dumps(credentials).encode(), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_credentials(blob: str, key_hex: str) -> dict:
    """
    Open a sealed credential blob.

    Raises ProviderError for a malformed blob or a wrong key; callers treat
    that exactly like any other provider failure.
    """
    aes = _aes(key_hex)
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProviderError(f"credential blob is not valid base64: {exc}") from exc
    if len(raw) <= _NONCE_SIZE:
        raise ProviderError("credential blob is too short")
    try:
        plain = aes.decrypt(raw[:_NONCE_SIZE], raw[_NONCE_SIZE:], None)
    except InvalidTag:
        raise ProviderError("credential blob could not be decrypted (wrong ENCRYPTION_KEY?)") from None
    return json.loads(plain)
