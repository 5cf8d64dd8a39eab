"""Secrets encryption for task source configuration.

Uses Fernet symmetric encryption for password-typed config values (API
tokens, client secrets). The encryption key is derived from the SECRETS_KEY
environment variable.
"""

import base64
import hashlib
import os
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet

ENCRYPTED_PREFIX = "fernet:"


class SecretsError(Exception):
    """Error related to secrets management."""

    pass


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    """Get or create the Fernet cipher for encryption.

    The key is derived from SECRETS_KEY environment variable.
    If not set, uses a deterministic key based on DATABASE_PATH for development.
    """
    key_material = os.environ.get("SECRETS_KEY")

    if not key_material:
        # Development fallback: NOT SECURE FOR PRODUCTION
        db_path = os.environ.get("DATABASE_PATH", "/data/tasksync.db")
        key_material = f"dev-secrets-key-{db_path}"

    # Derive a valid Fernet key (32 bytes, base64-encoded)
    key_hash = hashlib.sha256(key_material.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_hash))


def encrypt_secret(value: str) -> str:
    """Encrypt a secret value.

    Returns:
        Base64-encoded encrypted value
    """
    return _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(encrypted_value: str) -> str:
    """Decrypt a secret value.

    Raises:
        SecretsError: If decryption fails
    """
    try:
        return _get_fernet().decrypt(encrypted_value.encode("utf-8")).decode("utf-8")
    except Exception as e:
        raise SecretsError(f"Failed to decrypt secret: {e}") from e


def encrypt_config(config: dict[str, Any], secret_keys: set[str]) -> dict[str, Any]:
    """Copy of ``config`` with the given keys encrypted for storage."""
    stored = dict(config)
    for key in secret_keys:
        value = stored.get(key)
        if isinstance(value, str) and value and not value.startswith(ENCRYPTED_PREFIX):
            stored[key] = ENCRYPTED_PREFIX + encrypt_secret(value)
    return stored


def decrypt_config(stored: dict[str, Any]) -> dict[str, Any]:
    """Copy of a stored config with every encrypted value decrypted."""
    config = dict(stored)
    for key, value in stored.items():
        if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX):
            config[key] = decrypt_secret(value[len(ENCRYPTED_PREFIX):])
    return config
