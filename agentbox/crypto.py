"""AES-256-GCM helpers for credentials stored at rest."""
from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_BYTES = 12
TAG_BYTES = 16


class CryptoError(RuntimeError):
    pass


def _from_hex(segment: str, label: str) -> bytes:
    try:
        return bytes.fromhex(segment)
    except ValueError as exc:
        raise CryptoError(f"Malformed ciphertext: {label} is not hex") from exc


class CredentialCrypto:
    """Encrypts short secrets into ``iv:tag:ciphertext`` hex strings."""

    def __init__(self, key_hex: str) -> None:
        if not key_hex:
            raise CryptoError("Encryption key is not configured")
        try:
            key = bytes.fromhex(key_hex.strip())
        except ValueError as exc:
            raise CryptoError("Encryption key must be hex encoded") from exc
        if len(key) != 32:
            raise CryptoError("Encryption key must be 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{body.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str):
            raise CryptoError("Malformed ciphertext: expected a string")
        parts = ciphertext.split(":")
        if len(parts) != 3:
            raise CryptoError("Malformed ciphertext: expected iv:tag:ciphertext")
        iv = _from_hex(parts[0], "iv")
        tag = _from_hex(parts[1], "tag")
        body = _from_hex(parts[2], "ciphertext")
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise CryptoError("Malformed ciphertext: bad iv or tag length")
        try:
            plaintext = self._aead.decrypt(iv, body + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")


__all__ = ["CredentialCrypto", "CryptoError"]
