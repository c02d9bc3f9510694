"""AES-GCM protection for the mailbox credentials stored on department rows."""
from __future__ import annotations

import base64
import hashlib
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from helpdesk.core.config import get_settings

_VERSION = "v1"
_NONCE_BYTES = 12
_ASSOCIATED_DATA = b"helpdesk-credential"


class CredentialDecryptionError(ValueError):
    """Raised when a stored credential cannot be opened with the configured key."""


@lru_cache
def _cipher() -> AESGCM:
    key = hashlib.sha256(get_settings().credential_encryption_key.encode("utf-8")).digest()
    return AESGCM(key)


def encrypt_secret(secret: str) -> str:
    """Return ``v1:<base64(nonce + ciphertext + tag)>``."""
    nonce = os.urandom(_NONCE_BYTES)
    sealed = _cipher().encrypt(nonce, secret.encode("utf-8"), _ASSOCIATED_DATA)
    return f"{_VERSION}:{base64.urlsafe_b64encode(nonce + sealed).decode('ascii')}"


def decrypt_secret(payload: str) -> str:
    version, separator, body = payload.partition(":")
    if not separator or version != _VERSION:
        # Rows written before encryption was introduced hold the plain value.
        return payload
    try:
        raw = base64.urlsafe_b64decode(body.encode("ascii"))
        plain = _cipher().decrypt(raw[:_NONCE_BYTES], raw[_NONCE_BYTES:], _ASSOCIATED_DATA)
    except (InvalidTag, ValueError) as exc:
        raise CredentialDecryptionError("Stored credential could not be decrypted") from exc
    return plain.decode("utf-8")
