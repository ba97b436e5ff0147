"""
Secret encryption for stored agent configuration.

Secret-bearing leaves of a configuration tree are stored as
``<iv hex>:<ciphertext hex>`` using AES-256-CBC with PKCS7 padding. Decryption
never raises: a value that cannot be decrypted is handed back unchanged so an
agent with one bad secret still starts in a degraded state.
"""

from __future__ import annotations

import json
import os
import re
from functools import lru_cache
from typing import Any, Literal

import structlog
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..config import get_settings
from ..models.errors import DecryptionError

logger = structlog.get_logger()

_HEX_RE = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)

EncryptMode = Literal["sensitive", "all", "none"]


def is_sensitive_key(key: str) -> bool:
    """Check whether a config key names a secret-bearing value."""
    k = str(key).upper()
    return (
        k.endswith("_KEY")
        or k.endswith("_TOKEN")
        or k == "TOKEN"
        or "SECRET" in k
        or "PASSWORD" in k
    )


def is_encrypted(text: Any) -> bool:
    """Check whether a value looks like ``<32 hex iv>:<hex ciphertext>``."""
    if not isinstance(text, str) or ":" not in text:
        return False
    parts = text.split(":")
    if len(parts) != 2:
        return False
    iv_hex, encrypted_hex = parts
    if len(iv_hex) != 32:
        return False
    return bool(_HEX_RE.match(iv_hex) and _HEX_RE.match(encrypted_hex))


class ConfigCipher:
    """AES-256-CBC cipher for config secrets."""

    def __init__(self, key: str, mode: EncryptMode = "sensitive") -> None:
        """
        Initialize cipher.

        Args:
            key: Encryption key; zero padded or truncated to 32 bytes
            mode: Which leaves ``encrypt_config`` encrypts
        """
        self._key = key.encode("utf-8").ljust(32, b"\0")[:32]
        self._mode = mode

    def encrypt(self, text: str) -> str:
        """Encrypt a string into ``<iv hex>:<ciphertext hex>``."""
        iv = os.urandom(16)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{encrypted.hex()}"

    def decrypt_strict(self, text: str) -> str:
        """
        Decrypt a ciphertext produced by ``encrypt``.

        Raises:
            DecryptionError: If the value is not a valid ciphertext for this key
        """
        parts = text.split(":")
        try:
            iv = bytes.fromhex(parts[0])
            encrypted = bytes.fromhex(parts[1])
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(encrypted) + decryptor.finalize()
            unpadder = padding.PKCS7(128).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (IndexError, ValueError) as e:
            raise DecryptionError(str(e)) from e

    def decrypt(self, text: str) -> str:
        """Decrypt a value, returning it unchanged when it cannot be decrypted."""
        if not text or ":" not in text:
            return text
        try:
            return self.decrypt_strict(text)
        except DecryptionError:
            return text

    def decrypt_config(self, config: Any) -> Any:
        """
        Decrypt every secret-named string leaf of a config tree.

        A string root is parsed as JSON first; when it is not a JSON object or
        array it is treated as one encrypted scalar.
        """
        if not config:
            return config

        if isinstance(config, str):
            try:
                parsed = json.loads(config)
            except ValueError:
                return self.decrypt(config)
            if isinstance(parsed, (dict, list)):
                return self.decrypt_config(parsed)
            return self.decrypt(config)

        if isinstance(config, dict):
            return {key: self._decrypt_entry(key, value) for key, value in config.items()}
        if isinstance(config, list):
            return [self._decrypt_entry(str(i), value) for i, value in enumerate(config)]
        return config

    def _decrypt_entry(self, key: str, value: Any) -> Any:
        if isinstance(value, str) and is_sensitive_key(key):
            return self.decrypt(value)
        if isinstance(value, (dict, list)):
            return self.decrypt_config(value)
        return value

    def encrypt_config(self, config: Any) -> Any:
        """
        Encrypt secret-bearing string leaves of a config tree.

        Values already in encrypted format are left as they are, so the
        operation is idempotent.
        """
        if not config or self._mode == "none":
            return config
        if isinstance(config, dict):
            return {key: self._encrypt_entry(key, value) for key, value in config.items()}
        if isinstance(config, list):
            return [self._encrypt_entry(str(i), value) for i, value in enumerate(config)]
        return config

    def _encrypt_entry(self, key: str, value: Any) -> Any:
        if isinstance(value, str):
            should_encrypt = self._mode == "all" or is_sensitive_key(key)
            if should_encrypt:
                return value if is_encrypted(value) else self.encrypt(value)
            return value
        if isinstance(value, (dict, list)):
            return self.encrypt_config(value)
        return value


@lru_cache
def get_cipher() -> ConfigCipher:
    """Get cipher configured from settings."""
    settings = get_settings()
    if settings.encryption_key == "default-key-32-chars-long-12345":
        logger.warning("encryption_key_default_in_use")
    return ConfigCipher(settings.encryption_key, settings.encrypt_mode)
