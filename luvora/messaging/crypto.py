"""
Stored bot token sealing.

Tokens live in the config store as ``iv:tag:ciphertext`` (all hex), sealed
with AES-256-GCM under ``ENCRYPTION_KEY`` (64 hex characters).
"""

import os
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16


class TokenDecryptionError(ValueError):
    """A stored token could not be opened with the configured key."""


def load_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as exc:
        raise TokenDecryptionError("ENCRYPTION_KEY must be hex-encoded") from exc
    if len(key) != KEY_BYTES:
        raise TokenDecryptionError(
            f"ENCRYPTION_KEY must be {KEY_BYTES * 2} hex characters ({KEY_BYTES} bytes), got {len(key_hex)}"
        )
    return key


def encrypt_token(plaintext: str, key: bytes, iv: Optional[bytes] = None) -> str:
    iv = iv or os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return ":".join((iv.hex(), tag.hex(), ciphertext.hex()))


def decrypt_token(value: str, key: bytes) -> str:
    parts = value.split(":")
    if len(parts) != 3 or not all(parts):
        raise TokenDecryptionError("Invalid encrypted token, expected iv:tag:ciphertext")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise TokenDecryptionError("Encrypted token is not hex-encoded") from exc
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise TokenDecryptionError(f"Invalid IV or tag length ({len(iv)}/{len(tag)} bytes)")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise TokenDecryptionError("Decryption failed: wrong key or tampered token") from exc
    return plaintext.decode("utf-8")


def token_decryptor(key_hex: str) -> Callable[[str], str]:
    """Build the config store's ``decrypt`` hook. The key is checked up front."""
    key = load_key(key_hex)

    def decrypt(value: str) -> str:
        return decrypt_token(value, key)

    return decrypt
