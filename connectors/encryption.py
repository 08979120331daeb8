"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  The key
is loaded from ``config.integration_encryption_key``
(env var: ``INTEGRATION_ENCRYPTION_KEY``) and must be 64 hex characters.
Generate one with::

    python -c "from connectors.encryption import CredentialVault; print(CredentialVault.generate_key())"

Wire format: ``base64(IV (12 bytes) || auth tag (16 bytes) || ciphertext)``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from utils.errors import ConfigurationError, DecryptionError, EmptyInputError, FormatError

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class CredentialVault:
    """Authenticated encryption of OAuth tokens with a single 256-bit key."""

    def __init__(self, key_hex: str) -> None:
        if not key_hex:
            raise ConfigurationError(
                "INTEGRATION_ENCRYPTION_KEY is not set. Generate a 32-byte hex key with "
                "CredentialVault.generate_key()"
            )
        if not _HEX_KEY.match(key_hex):
            raise ConfigurationError(
                "INTEGRATION_ENCRYPTION_KEY must be a 64-character hex string (32 bytes)"
            )
        self._aead = AESGCM(bytes.fromhex(key_hex))

    # ── Core ────────────────────────────────────────────────────────────

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string for database storage."""
        if not plaintext:
            raise EmptyInputError("Cannot encrypt empty string")

        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext; the stored layout puts it first.
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a token string read from the database.

        Raises ``FormatError`` for input that cannot possibly be a ciphertext
        and ``DecryptionError`` when authentication fails for any reason.
        """
        if not blob:
            raise FormatError("Cannot decrypt empty string")
        try:
            combined = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError):
            raise FormatError("Invalid encrypted data: not base64") from None

        if len(combined) < IV_LENGTH + TAG_LENGTH + 1:
            raise FormatError("Invalid encrypted data: too short")

        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = combined[IV_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            raise DecryptionError("Decryption failed: invalid data or key") from None

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext else None

    # ── Key management helpers ──────────────────────────────────────────

    def rotate(self, blob: str, new_vault: "CredentialVault") -> str:
        """Re-encrypt ``blob`` (sealed with this vault's key) under ``new_vault``."""
        return new_vault.encrypt(self.decrypt(blob))

    @staticmethod
    def generate_key() -> str:
        return os.urandom(KEY_LENGTH).hex()

    @staticmethod
    def is_configured(key_hex: Optional[str]) -> bool:
        return bool(key_hex and _HEX_KEY.match(key_hex))


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Build the process vault from settings once. Fails fast on a bad key."""
    global _vault
    if _vault is None:
        from config.settings import config

        _vault = CredentialVault(config.integration_encryption_key)
        logger.info("Token encryption enabled (AES-256-GCM)")
    return _vault
