# Secret vault - AES-256-GCM protection of the embedded OAuth client secrets.
# Created: 2026-10-19
#
# Blob layout: nonce (12 bytes) || ciphertext || GCM tag (16 bytes).
# Every blob carries its own random nonce; only the key is shared.

from __future__ import annotations

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from esim_mailer import _embedded
from esim_mailer.errors import SecretDecryptionFailure

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
_TAG_SIZE = 16


def generate_key() -> bytes:
    """Return a fresh random 256-bit key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def encrypt_client_secret(plaintext: str, key: bytes, nonce: bytes | None = None) -> bytes:
    """Encrypt *plaintext* under *key*, prefixing the nonce to the result.

    A fresh random nonce is drawn unless one is given; callers must never
    pass the same nonce for two different secrets.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    nonce = nonce if nonce is not None else os.urandom(NONCE_SIZE)
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    return nonce + AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)


def decrypt_client_secret(ciphertext: bytes, key: bytes | None = None) -> str:
    """Decrypt a blob produced by :func:`encrypt_client_secret`.

    Uses the embedded key unless *key* is given.

    Raises:
        SecretDecryptionFailure: wrong key, truncated or tampered blob, or
            a plaintext that is not UTF-8.
    """
    key = _embedded.SECRET_KEY if key is None else key
    if len(key) != KEY_SIZE:
        raise SecretDecryptionFailure("Embedded secret key is missing or malformed")
    if len(ciphertext) < NONCE_SIZE + _TAG_SIZE:
        raise SecretDecryptionFailure("Encrypted client secret is truncated")

    nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as exc:
        logger.error("Client secret failed authentication; the build is corrupted")
        raise SecretDecryptionFailure("Client secret failed to decrypt") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SecretDecryptionFailure("Client secret is not valid UTF-8") from exc
