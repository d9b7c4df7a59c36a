"""Encryption helpers for session material stored in the settings table.

Payload format: ``v1:<iv b64>:<tag b64>:<ciphertext b64>`` (AES-256-GCM, 12-byte IV).
The key is the SHA-256 digest of APP_AUTH_SECRET, so any passphrase length works.
"""
from __future__ import annotations
import base64, hashlib, os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_TAG_LEN = 16


def _key_from_secret(secret: str) -> bytes:
    if not secret:
        raise ValueError("APP_AUTH_SECRET is required to encrypt/decrypt session material")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_string(plaintext: str, secret: str) -> str:
    key = _key_from_secret(secret)
    iv = os.urandom(12)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
    return "v1:" + ":".join(base64.b64encode(p).decode("ascii") for p in (iv, tag, ciphertext))


def decrypt_string(payload: str, secret: str) -> str:
    key = _key_from_secret(secret)
    parts = str(payload or "").split(":")
    if len(parts) != 4 or parts[0] != "v1":
        raise ValueError("encrypted payload format is invalid (expected v1:iv:tag:ciphertext)")
    try:
        iv, tag, ciphertext = (base64.b64decode(p) for p in parts[1:])
    except (ValueError, TypeError) as exc:
        raise ValueError(f"encrypted payload is not valid base64: {exc}") from exc
    plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    return plain.decode("utf-8")
