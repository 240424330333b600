"""Field-level encryption for speaker PII stored at rest.

Values are sealed with AES-256-GCM under a key derived per value with
PBKDF2-HMAC-SHA256 from the instance master secret and a random salt.
The stored form is::

    enc:v1:<salt>:<iv>:<tag>:<ciphertext>

with every part base64 encoded. Plaintext values never start with the
``enc:v1:`` marker, which is how callers tell sealed values apart.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from collections.abc import Iterable, Mapping
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cfp_federation.core.settings import settings

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:v1:"
PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
MIN_SECRET_LENGTH = 32


class EncryptionError(ValueError):
    """Raised when a value cannot be sealed or opened."""


def is_encrypted(value: object) -> bool:
    """Return True if ``value`` is a sealed ciphertext string."""
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


class PiiCipher:
    """Seal and open individual string fields."""

    def __init__(self, master_secret: str, *, iterations: int = PBKDF2_ITERATIONS) -> None:
        if not master_secret or len(master_secret) < MIN_SECRET_LENGTH:
            raise EncryptionError(
                f"Encryption secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._secret = master_secret.encode("utf-8")
        self._iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret)

    def encrypt(self, plaintext: str) -> str:
        """Seal ``plaintext``. Empty strings and sealed values pass through."""
        if not plaintext or is_encrypted(plaintext):
            return plaintext

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; the stored layout keeps it as its own part.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        parts = (salt, iv, tag, ciphertext)
        return ENCRYPTED_PREFIX + ":".join(base64.b64encode(p).decode("ascii") for p in parts)

    def decrypt(self, value: str) -> str:
        """Open a sealed value. Unsealed input is returned unchanged."""
        if not is_encrypted(value):
            return value

        parts = value[len(ENCRYPTED_PREFIX):].split(":")
        if len(parts) != 4:
            raise EncryptionError("Invalid encrypted value format")
        try:
            salt, iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError) as exc:
            raise EncryptionError("Invalid encrypted value encoding") from exc

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise EncryptionError("Decryption failed: authentication tag mismatch") from exc
        return plaintext.decode("utf-8")

    def encrypt_fields(self, values: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``values`` with string ``fields`` sealed."""
        result = dict(values)
        for name in fields:
            current = result.get(name)
            if isinstance(current, str) and current:
                result[name] = self.encrypt(current)
        return result

    def decrypt_fields(self, values: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``values`` with sealed ``fields`` opened.

        A field that fails to open keeps its stored value and is logged.
        """
        result = dict(values)
        for name in fields:
            current = result.get(name)
            if not is_encrypted(current):
                continue
            try:
                result[name] = self.decrypt(current)
            except EncryptionError as exc:
                logger.error("Failed to decrypt field %s: %s", name, exc)
        return result


def build_master_secret(secret_key: str, license_key: str | None = None) -> str:
    """Combine the application secret with the license key when present."""
    if license_key:
        return f"{secret_key}:{license_key}"
    return secret_key


def load_pii_cipher() -> PiiCipher | None:
    """Build the cipher from global settings, or None when encryption is disabled."""

    if not settings.pii_encryption_enabled:
        return None
    return PiiCipher(build_master_secret(settings.secret_key, settings.federation_license_key))
