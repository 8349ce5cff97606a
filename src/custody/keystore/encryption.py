"""Password-based encryption for key material at rest.

Uses Fernet (AES-128-CBC with HMAC) with a key derived from the master
password via PBKDF2-SHA256. Each blob carries its own salt:
``<urlsafe-b64 salt>:<fernet token>``.
"""

import base64
import hashlib
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from custody.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100000
SALT_BYTES = 16


def derive_key_from_password(password: str, salt: Optional[bytes] = None) -> tuple[str, bytes]:
    """Derive a Fernet key from a password using PBKDF2.

    Args:
        password: Master password
        salt: Optional salt (generated if not provided)

    Returns:
        Tuple of (base64-encoded key, salt)
    """
    if salt is None:
        salt = os.urandom(SALT_BYTES)

    key = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt,
        PBKDF2_ITERATIONS,
        dklen=32,
    )

    # Fernet requires base64-encoded key
    fernet_key = base64.urlsafe_b64encode(key)
    return fernet_key.decode(), salt


def encrypt_secret(plaintext: str, password: str) -> str:
    """Encrypt a seed or private key with the master password."""
    if not password:
        raise ConfigurationError("Master password is not configured")
    key, salt = derive_key_from_password(password)
    token = Fernet(key.encode()).encrypt(plaintext.encode()).decode()
    return f"{base64.urlsafe_b64encode(salt).decode()}:{token}"


def decrypt_secret(blob: str, password: str) -> str:
    """Decrypt a blob produced by ``encrypt_secret``.

    Raises:
        ConfigurationError: no password, wrong password or corrupted blob
        ValidationError: blob is not in the expected format
    """
    if not password:
        raise ConfigurationError("Master password is not configured")

    salt_b64, sep, token = blob.partition(":")
    if not sep or not token:
        raise ValidationError("Encrypted secret has an invalid format")

    try:
        salt = base64.urlsafe_b64decode(salt_b64.encode())
    except ValueError:
        raise ValidationError("Encrypted secret has an invalid salt")

    key, _ = derive_key_from_password(password, salt)
    try:
        return Fernet(key.encode()).decrypt(token.encode()).decode()
    except InvalidToken:
        # Wrong password or tampered ciphertext
        raise ConfigurationError("Failed to decrypt key material")


def rotate_secret(blob: str, old_password: str, new_password: str) -> str:
    """Re-encrypt a blob under a new master password."""
    return encrypt_secret(decrypt_secret(blob, old_password), new_password)
