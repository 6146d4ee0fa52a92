"""Encryption of the opaque configuration token carried in add-on URLs."""

from __future__ import annotations

import base64
import binascii
import json
import os
from functools import lru_cache
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

TOKEN_PREFIX = "enc."
TOKEN_VERSION = 1
NONCE_LENGTH = 16
TAG_LENGTH = 16
KDF_SALT = b"nowpicks-config-encryption-v1"
KDF_ITERATIONS = 100_000

# Prefix, version byte, nonce and tag must all be present before decrypting.
MIN_TOKEN_LENGTH = len(TOKEN_PREFIX) + 4 * (1 + NONCE_LENGTH + TAG_LENGTH + 1) // 3


class InvalidTokenError(ValueError):
    """Raised when a configuration token cannot be decrypted."""


@lru_cache(maxsize=8)
def _derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def encrypt_config(payload: dict[str, Any], secret: str) -> str:
    """Serialize and encrypt a configuration payload into a URL-safe token."""

    plaintext = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    nonce = os.urandom(NONCE_LENGTH)
    version = bytes([TOKEN_VERSION])
    ciphertext = AESGCM(_derive_key(secret)).encrypt(nonce, plaintext, version)
    return TOKEN_PREFIX + _b64encode(version + nonce + ciphertext)


def decrypt_config(token: str | None, secret: str) -> dict[str, Any]:
    """Decrypt a token produced by :func:`encrypt_config`.

    Every failure is reported as :class:`InvalidTokenError` with a generic
    message so callers never leak decoding details.
    """

    if not token or not token.startswith(TOKEN_PREFIX) or len(token) < MIN_TOKEN_LENGTH:
        raise InvalidTokenError("Invalid configuration token")
    try:
        raw = _b64decode(token[len(TOKEN_PREFIX):])
    except (binascii.Error, ValueError) as exc:
        raise InvalidTokenError("Invalid configuration token") from exc

    if len(raw) < 1 + NONCE_LENGTH + TAG_LENGTH or raw[0] != TOKEN_VERSION:
        raise InvalidTokenError("Invalid configuration token")

    version = raw[:1]
    nonce = raw[1 : 1 + NONCE_LENGTH]
    ciphertext = raw[1 + NONCE_LENGTH :]
    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(nonce, ciphertext, version)
        payload = json.loads(plaintext.decode("utf-8"))
    except (InvalidTag, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidTokenError("Invalid configuration token") from exc
    if not isinstance(payload, dict):
        raise InvalidTokenError("Invalid configuration token")
    return payload
