"""Encryption of provider credentials stored on storage configs.

Tokens are encrypted with Fernet (AES-128-CBC + HMAC-SHA256), so a wrong
key or a tampered ciphertext fails loudly instead of decoding to garbage.
The key is always passed in by the caller; nothing here reads process-wide
configuration.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class CredentialError(Exception):
    """A credential is missing or cannot be decrypted."""
    pass


def _fernet(key: str) -> Fernet:
    """Derive a Fernet instance from an arbitrary secret string."""
    if not key:
        raise CredentialError("Encryption key not configured")
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt(plaintext: str, key: str) -> str:
    """Encrypt a secret for storage. Empty input is returned unchanged."""
    if not plaintext:
        return plaintext
    return _fernet(key).encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt(ciphertext: str, key: str) -> str:
    """Decrypt a secret produced by encrypt().

    Raises:
        CredentialError: If the key is wrong or the ciphertext is corrupt
    """
    if not ciphertext:
        return ciphertext
    try:
        return _fernet(key).decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise CredentialError(f"Failed to decrypt credential: {type(e).__name__}")
