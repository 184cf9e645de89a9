"""Session Router – Credential encryption.

Fernet keyed from ``AUTH_SECRET``. Two shapes are stored:

* auth state rows hold raw Fernet tokens (``encrypt_bytes``/``decrypt_bytes``)
* CRM token rows hold text tagged with ``ENC:``; untagged rows written by the
  installation flow are read as plain text and encrypted on the next save.
"""

import base64
import hashlib

import structlog
from cryptography.fernet import Fernet, InvalidToken

from config.settings import get_settings

logger = structlog.get_logger()

ENCRYPTED_TAG = "ENC:"

_fernet: Fernet | None = None


def _cipher() -> Fernet:
    global _fernet
    if _fernet is None:
        secret = get_settings().auth_secret or "insecure-fallback-secret-for-dev-only"
        # Fernet wants a urlsafe-b64 32-byte key
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
        _fernet = Fernet(key)
    return _fernet


def encrypt_bytes(data: bytes) -> bytes:
    return _cipher().encrypt(data)


def decrypt_bytes(token: bytes) -> bytes:
    """Raises InvalidToken for a wrong key or a corrupted row."""
    return _cipher().decrypt(token)


def encrypt_value(plain_text: str) -> str:
    """Encrypt ``plain_text`` and tag it; already-tagged input is returned as is."""
    if plain_text.startswith(ENCRYPTED_TAG):
        return plain_text
    return ENCRYPTED_TAG + _cipher().encrypt(plain_text.encode()).decode()


def decrypt_value(stored: str) -> str:
    """Inverse of :func:`encrypt_value`. Untagged input passes through.

    Raises:
        ValueError: the tagged payload cannot be decrypted with the current key.
    """
    if not stored.startswith(ENCRYPTED_TAG):
        return stored
    try:
        return _cipher().decrypt(stored[len(ENCRYPTED_TAG):].encode()).decode()
    except InvalidToken as e:
        logger.error("crypto.decryption_failed", error=str(e) or "invalid token")
        raise ValueError("stored value cannot be decrypted") from e
